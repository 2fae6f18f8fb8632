"""Read-only dashboard snapshot of orchestrator progress."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..agent.models import TaskStatus
from ..recovery.circuit import CircuitBreaker
from ..state import (
    ErrorLogEntry,
    Lesson,
    MilestoneStatus,
    OrchestratorState,
    PhaseStatus,
)


class SystemHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass
class AgentMetrics:
    agent_type: str
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_active: int = 0
    tasks_waiting: int = 0
    average_duration: float = 0.0
    circuit_open: bool = False

    @property
    def success_rate(self) -> float:
        finished = self.tasks_completed + self.tasks_failed
        return self.tasks_completed / finished if finished else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_type": self.agent_type,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_active": self.tasks_active,
            "tasks_waiting": self.tasks_waiting,
            "success_rate": round(self.success_rate, 3),
            "average_duration": round(self.average_duration, 3),
            "circuit_open": self.circuit_open,
        }


@dataclass
class MilestoneSummary:
    phase: int
    milestone_id: str
    name: str
    status: MilestoneStatus
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "milestone_id": self.milestone_id,
            "name": self.name,
            "status": self.status.value,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class DashboardSnapshot:
    generated_at: datetime
    goal: str
    current_phase: int | None
    current_phase_name: str | None
    current_phase_status: PhaseStatus | None
    progress: float
    phase_statuses: dict[int, PhaseStatus] = field(default_factory=dict)
    agent_metrics: list[AgentMetrics] = field(default_factory=list)
    recent_milestones: list[MilestoneSummary] = field(default_factory=list)
    recent_errors: list[ErrorLogEntry] = field(default_factory=list)
    recent_lessons: list[Lesson] = field(default_factory=list)
    paused_phases: list[int] = field(default_factory=list)
    system_health: SystemHealth = SystemHealth.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "goal": self.goal,
            "current_phase": self.current_phase,
            "current_phase_name": self.current_phase_name,
            "current_phase_status": (
                self.current_phase_status.value if self.current_phase_status else None
            ),
            "progress": self.progress,
            "phase_statuses": {str(k): v.value for k, v in self.phase_statuses.items()},
            "agent_metrics": [m.to_dict() for m in self.agent_metrics],
            "recent_milestones": [m.to_dict() for m in self.recent_milestones],
            "recent_errors": [e.model_dump(mode="json") for e in self.recent_errors],
            "recent_lessons": [lesson.model_dump(mode="json") for lesson in self.recent_lessons],
            "paused_phases": list(self.paused_phases),
            "system_health": self.system_health.value,
        }


def _health(state: OrchestratorState, open_circuits: list[str]) -> SystemHealth:
    statuses = [p.status for p in state.phases]
    if PhaseStatus.FAILED in statuses:
        return SystemHealth.CRITICAL
    if PhaseStatus.BLOCKED in statuses or open_circuits:
        return SystemHealth.DEGRADED
    recent = state.errors[-5:]
    if any(e.severity == "critical" for e in recent):
        return SystemHealth.DEGRADED
    return SystemHealth.HEALTHY


def build_snapshot(
    state: OrchestratorState,
    circuit: CircuitBreaker | None = None,
    recent: int = 5,
) -> DashboardSnapshot:
    """Summarize ``state`` for an external dashboard renderer."""
    open_circuits = circuit.open_agents() if circuit else []

    metrics: dict[str, AgentMetrics] = {}
    durations: dict[str, list[float]] = defaultdict(list)
    for task in state.tasks.values():
        m = metrics.setdefault(task.agent_type, AgentMetrics(task.agent_type))
        if task.status == TaskStatus.COMPLETED:
            m.tasks_completed += 1
            if task.duration is not None:
                durations[task.agent_type].append(task.duration)
        elif task.status == TaskStatus.FAILED:
            m.tasks_failed += 1
        elif task.status == TaskStatus.ACTIVE:
            m.tasks_active += 1
        elif task.status == TaskStatus.WAITING:
            m.tasks_waiting += 1
    for agent_type, values in durations.items():
        metrics[agent_type].average_duration = sum(values) / len(values)
    for agent_type in open_circuits:
        metrics.setdefault(agent_type, AgentMetrics(agent_type)).circuit_open = True

    milestones = [
        MilestoneSummary(p.ordinal, m.id, m.name, m.status, m.completed_at)
        for p in state.phases
        for m in p.milestones
        if m.is_terminal
    ]
    milestones.sort(key=lambda s: s.completed_at or datetime.min)

    current = state.current_phase
    return DashboardSnapshot(
        generated_at=datetime.now(),
        goal=state.goal,
        current_phase=current.ordinal if current else None,
        current_phase_name=current.name if current else None,
        current_phase_status=current.status if current else None,
        progress=state.progress,
        phase_statuses={p.ordinal: p.status for p in state.phases},
        agent_metrics=sorted(metrics.values(), key=lambda m: m.agent_type),
        recent_milestones=milestones[-recent:][::-1],
        recent_errors=list(reversed(state.errors[-recent:])),
        recent_lessons=list(reversed(state.lessons[-recent:])),
        paused_phases=sorted(state.pauses),
        system_health=_health(state, open_circuits),
    )
