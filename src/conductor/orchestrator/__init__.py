"""Phase orchestration: plans, dispatch, conflicts, events and scheduling."""

from .conflicts import ConflictHandler
from .dispatcher import AgentTaskDispatcher, DispatchOutcome, OutcomeKind
from .events import Event, EventBus, EventType
from .factory import build_orchestrator
from .plan import (
    AgentSettings,
    MilestoneSpec,
    PhaseSpec,
    Plan,
    builtin_plan,
    load_plan,
    parse_plan,
    validate_plan,
)
from .scheduler import CommandResult, PhaseScheduler, ResumeCommand
from .snapshot import DashboardSnapshot, SystemHealth, build_snapshot

__all__ = [
    # Plans
    "AgentSettings",
    "MilestoneSpec",
    "PhaseSpec",
    "Plan",
    "builtin_plan",
    "load_plan",
    "parse_plan",
    "validate_plan",
    # Dispatch
    "AgentTaskDispatcher",
    "DispatchOutcome",
    "OutcomeKind",
    # Events and conflicts
    "ConflictHandler",
    "Event",
    "EventBus",
    "EventType",
    # Scheduling
    "CommandResult",
    "PhaseScheduler",
    "ResumeCommand",
    "build_orchestrator",
    # Dashboard
    "DashboardSnapshot",
    "SystemHealth",
    "build_snapshot",
]
