"""Tests for the dashboard snapshot."""

from __future__ import annotations

from datetime import datetime, timedelta

from conductor.agent.models import AgentTask, TaskStatus
from conductor.orchestrator.snapshot import SystemHealth, build_snapshot
from conductor.recovery.circuit import CircuitBreaker
from conductor.state import (
    ErrorLogEntry,
    Milestone,
    MilestoneStatus,
    OrchestratorState,
    PauseRecord,
    Phase,
    PhaseStatus,
)

T0 = datetime(2024, 5, 1, 12, 0, 0)


def task(task_id: str, agent_type: str, status: TaskStatus, seconds: float | None = None):
    t = AgentTask(id=task_id, agent_type=agent_type, phase=1, milestone="m", status=status)
    if seconds is not None:
        t.started_at = T0
        t.completed_at = T0 + timedelta(seconds=seconds)
    return t


def make_state() -> OrchestratorState:
    return OrchestratorState(
        goal="ship",
        phases=[
            Phase(
                ordinal=1,
                name="Build",
                status=PhaseStatus.COMPLETED,
                milestones=[
                    Milestone(
                        id="a", name="A", status=MilestoneStatus.COMPLETED, completed_at=T0
                    ),
                    Milestone(
                        id="b",
                        name="B",
                        status=MilestoneStatus.COMPLETED,
                        completed_at=T0 + timedelta(minutes=1),
                    ),
                ],
            ),
            Phase(
                ordinal=2,
                name="Test",
                status=PhaseStatus.IN_PROGRESS,
                milestones=[Milestone(id="c", name="C"), Milestone(id="d", name="D")],
            ),
        ],
    )


class TestBuildSnapshot:
    def test_progress_and_current_phase(self):
        snapshot = build_snapshot(make_state())
        assert snapshot.goal == "ship"
        assert snapshot.progress == 50.0
        assert snapshot.current_phase == 2
        assert snapshot.current_phase_name == "Test"
        assert snapshot.current_phase_status == PhaseStatus.IN_PROGRESS
        assert snapshot.system_health == SystemHealth.HEALTHY

    def test_recent_milestones_newest_first(self):
        snapshot = build_snapshot(make_state())
        assert [m.milestone_id for m in snapshot.recent_milestones] == ["b", "a"]

    def test_agent_metrics(self):
        state = make_state()
        for t in (
            task("t1", "builder", TaskStatus.COMPLETED, 2.0),
            task("t2", "builder", TaskStatus.COMPLETED, 4.0),
            task("t3", "builder", TaskStatus.FAILED),
            task("t4", "tester", TaskStatus.ACTIVE),
            task("t5", "tester", TaskStatus.WAITING),
        ):
            state.tasks[t.id] = t
        metrics = {m.agent_type: m for m in build_snapshot(state).agent_metrics}
        builder = metrics["builder"]
        assert (builder.tasks_completed, builder.tasks_failed) == (2, 1)
        assert builder.average_duration == 3.0
        assert round(builder.success_rate, 3) == 0.667
        assert (metrics["tester"].tasks_active, metrics["tester"].tasks_waiting) == (1, 1)

    def test_open_circuit_degrades_health(self):
        breaker = CircuitBreaker(threshold=1, window=60, cooldown=60)
        breaker.trip("scanner", "out of memory")
        snapshot = build_snapshot(make_state(), breaker)
        assert snapshot.system_health == SystemHealth.DEGRADED
        scanner = next(m for m in snapshot.agent_metrics if m.agent_type == "scanner")
        assert scanner.circuit_open is True

    def test_blocked_phase_is_paused_and_degraded(self):
        state = make_state()
        state.phases[1].status = PhaseStatus.BLOCKED
        state.pauses[2] = PauseRecord(phase=2, reason="conflict")
        snapshot = build_snapshot(state)
        assert snapshot.paused_phases == [2]
        assert snapshot.system_health == SystemHealth.DEGRADED

    def test_critical_error_degrades_health(self):
        state = make_state()
        state.errors.append(
            ErrorLogEntry(
                phase=2, error_type="fatal", category="permission_denied",
                severity="critical", message="denied",
            )
        )
        assert build_snapshot(state).system_health == SystemHealth.DEGRADED

    def test_failed_phase_is_critical(self):
        state = make_state()
        state.phases[1].status = PhaseStatus.FAILED
        assert build_snapshot(state).system_health == SystemHealth.CRITICAL

    def test_recent_errors_are_bounded(self):
        state = make_state()
        for i in range(8):
            state.errors.append(
                ErrorLogEntry(
                    phase=2, error_type="transient", category="network",
                    severity="medium", message=f"e{i}",
                )
            )
        snapshot = build_snapshot(state, recent=3)
        assert [e.message for e in snapshot.recent_errors] == ["e7", "e6", "e5"]

    def test_to_dict_is_plain_data(self):
        data = build_snapshot(make_state()).to_dict()
        assert data["phase_statuses"] == {"1": "completed", "2": "in_progress"}
        assert data["current_phase_status"] == "in_progress"
        assert data["system_health"] == "healthy"
        assert data["recent_milestones"][0]["completed_at"] == "2024-05-01T12:01:00"

    def test_everything_done(self):
        state = make_state()
        state.phases[1].status = PhaseStatus.COMPLETED
        for m in state.phases[1].milestones:
            m.status = MilestoneStatus.COMPLETED
        snapshot = build_snapshot(state)
        assert snapshot.current_phase is None
        assert snapshot.progress == 100.0
