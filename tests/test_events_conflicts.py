"""Tests for the event bus and conflict handling."""

from __future__ import annotations

import pytest

from conductor.agent.models import AgentTask, AgentTaskResult
from conductor.orchestrator.conflicts import ConflictHandler
from conductor.orchestrator.events import EventBus, EventType
from conductor.recovery.classifier import classify_error
from conductor.state import OrchestratorState, Phase


def task(task_id: str = "1-scan-security", agent_type: str = "security") -> AgentTask:
    return AgentTask(id=task_id, agent_type=agent_type, phase=1, milestone="scan")


# =============================================================================
# EventBus
# =============================================================================


class TestEventBus:
    def test_sequence_numbers_increase(self):
        bus = EventBus()
        first = bus.emit(EventType.PHASE_STARTED, phase=1)
        second = bus.emit(EventType.PHASE_ADVANCED, phase=1)
        assert (first.sequence, second.sequence) == (1, 2)

    def test_subscribers_see_events_in_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe(lambda e: seen.append(e.type))
        bus.emit(EventType.TASK_STARTED)
        bus.emit(EventType.TASK_COMPLETED)
        assert seen == [EventType.TASK_STARTED, EventType.TASK_COMPLETED]

    def test_failing_subscriber_is_isolated(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.emit(EventType.PHASE_STARTED, phase=1)
        assert len(seen) == 1
        assert "Event subscriber failed" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        bus.emit(EventType.PHASE_STARTED)
        assert seen == []

    def test_subscriber_may_emit(self):
        bus = EventBus()

        def chain(event):
            if event.type == EventType.PHASE_STARTED:
                bus.emit(EventType.PHASE_ADVANCED)

        bus.subscribe(chain)
        bus.emit(EventType.PHASE_STARTED)
        assert bus.count(EventType.PHASE_ADVANCED) == 1

    def test_history_is_bounded(self):
        bus = EventBus(history_limit=3)
        for _ in range(5):
            bus.emit(EventType.TASK_STARTED)
        assert [e.sequence for e in bus.history()] == [3, 4, 5]

    def test_event_names(self):
        assert EventType.PAUSED.value == "agent.paused"
        assert EventType.CHECKPOINT_RESTORED.value == "checkpoint.restored"
        event = EventBus().emit(EventType.TASK_FAILED, task_id="t")
        assert event.to_dict()["type"] == "agent.task_failed"
        assert event.to_dict()["payload"] == {"task_id": "t"}


# =============================================================================
# Conflict reports
# =============================================================================


class TestBuildReport:
    def setup_method(self):
        self.handler = ConflictHandler(EventBus())

    def test_vulnerabilities_drive_report(self):
        result = AgentTaskResult.fail(
            "security vulnerability found",
            vulnerabilities=[
                {
                    "id": "SQLI-1",
                    "severity": "critical",
                    "file": "app/db.py",
                    "line": 42,
                    "recommendation": "Use parameterized queries",
                },
                {"type": "xss", "severity": "low"},
                "not a dict",
            ],
        )
        report = self.handler.build_report(
            task(), result, classify_error("security vulnerability found")
        )
        assert report.conflict_type == "security_vulnerability"
        assert report.severity == "critical"
        assert report.affected_items == ["SQLI-1 (app/db.py:42)", "xss"]
        assert report.recommended_actions == ["Use parameterized queries"]
        assert report.message.startswith("2 issue(s) reported by security")
        assert report.requires_human_input is True

    def test_metadata_items_and_actions(self):
        result = AgentTaskResult.fail(
            "business rule violated",
            affected_items=["order-7"],
            recommended_actions=["Ask finance"],
        )
        report = self.handler.build_report(
            task(agent_type="billing"), result, classify_error("business rule violated")
        )
        assert report.affected_items == ["order-7"]
        assert report.recommended_actions == ["Ask finance"]

    def test_defaults_without_metadata(self):
        report = self.handler.build_report(task(), None, classify_error("compliance audit failed"))
        assert report.affected_items == ["1-scan-security"]
        assert report.recommended_actions[-1] == "Resume the phase with a resolution note"


# =============================================================================
# Pauses
# =============================================================================


class TestPauses:
    def setup_method(self):
        self.events = EventBus()
        self.handler = ConflictHandler(self.events, action_url="/ui/conflicts")
        self.state = OrchestratorState(phases=[Phase(ordinal=1, name="Scan")])

    def report(self, task_id: str):
        return self.handler.build_report(
            task(task_id), None, classify_error("security vulnerability")
        )

    def test_first_conflict_creates_pause(self):
        pause, created = self.handler.register(self.state, self.report("a"))
        assert created is True
        assert pause.action_url == "/ui/conflicts"
        assert self.handler.is_paused(self.state, 1)
        paused = self.events.history(EventType.PAUSED)[0]
        assert paused.payload["requiresAction"] is True
        assert paused.payload["pauseType"] == "conflict"

    def test_concurrent_conflicts_share_one_pause(self):
        self.handler.register(self.state, self.report("a"))
        pause, created = self.handler.register(self.state, self.report("b"))
        assert created is False
        assert [c.task_id for c in pause.conflicts] == ["a", "b"]
        assert self.events.count(EventType.PAUSED) == 1
        assert self.events.count(EventType.CONFLICT_DETECTED) == 2

    def test_resolve_emits_resumed_once(self):
        self.handler.register(self.state, self.report("a"))
        pause = self.handler.resolve(self.state, 1, "accepted risk")
        assert pause.resolution_note == "accepted risk"
        assert pause.resumed_at is not None
        assert not self.handler.is_paused(self.state, 1)
        assert self.handler.resolve(self.state, 1, "again") is None
        assert self.events.count(EventType.RESUMED) == 1

    @pytest.mark.parametrize("phase", [2, 99])
    def test_resolve_unpaused_phase(self, phase):
        assert self.handler.resolve(self.state, phase, "") is None
