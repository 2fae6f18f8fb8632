"""Orchestrator state models.

``OrchestratorState`` is the single mutable blob shared by the scheduler's
apply path: phases, milestones, task records, pauses, the error log and the
lessons list. It is a pydantic model so a checkpoint is simply its JSON dump.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .agent.models import AgentTask, TaskStatus


class PhaseStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Milestone(BaseModel):
    id: str
    name: str
    description: str = ""
    status: MilestoneStatus = MilestoneStatus.PENDING
    required_agents: list[str] = Field(default_factory=list)
    validation_ref: str | None = None
    critical: bool = True
    depends_on: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (MilestoneStatus.COMPLETED, MilestoneStatus.FAILED)


class Phase(BaseModel):
    ordinal: int
    name: str
    description: str = ""
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    milestones: list[Milestone] = Field(default_factory=list)
    required_agents: list[str] = Field(default_factory=list)
    prerequisites: list[int] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    status_reason: str | None = None

    def milestone(self, milestone_id: str) -> Milestone | None:
        for milestone in self.milestones:
            if milestone.id == milestone_id:
                return milestone
        return None

    @property
    def progress(self) -> float:
        """Fraction of milestones completed, 0.0 to 1.0."""
        if not self.milestones:
            return 1.0 if self.status == PhaseStatus.COMPLETED else 0.0
        done = sum(1 for m in self.milestones if m.status == MilestoneStatus.COMPLETED)
        return done / len(self.milestones)


class ErrorLogEntry(BaseModel):
    """A failure or conflict observed during the run."""

    timestamp: datetime = Field(default_factory=datetime.now)
    phase: int
    milestone: str | None = None
    agent_type: str | None = None
    task_id: str | None = None
    error_type: str
    category: str
    severity: str
    message: str


class LessonCategory(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    OPTIMIZATION = "optimization"
    PATTERN = "pattern"


class Lesson(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.now)
    category: LessonCategory
    description: str
    impact: str = "medium"
    phase: int | None = None
    agent_type: str | None = None


class ConflictReport(BaseModel):
    """Human-readable account of one conflict, carried by the pause."""

    task_id: str
    agent_type: str
    phase: int
    milestone: str
    conflict_type: str
    severity: str
    message: str
    affected_items: list[str] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)
    requires_human_input: bool = True
    detected_at: datetime = Field(default_factory=datetime.now)

    def event_payload(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "agent_type": self.agent_type,
            "phase": self.phase,
            "milestone": self.milestone,
            "conflictType": self.conflict_type,
            "severity": self.severity,
            "message": self.message,
            "affectedItems": list(self.affected_items),
            "recommendedActions": list(self.recommended_actions),
            "requiresHumanInput": self.requires_human_input,
        }


class PauseRecord(BaseModel):
    """One pause per phase; concurrent conflicts are aggregated into it."""

    phase: int
    reason: str
    pause_type: str = "conflict"
    requires_action: bool = True
    action_url: str | None = None
    conflicts: list[ConflictReport] = Field(default_factory=list)
    paused_at: datetime = Field(default_factory=datetime.now)
    resumed_at: datetime | None = None
    resolution_note: str | None = None


class OrchestratorState(BaseModel):
    goal: str = ""
    phases: list[Phase] = Field(default_factory=list)
    tasks: dict[str, AgentTask] = Field(default_factory=dict)
    pauses: dict[int, PauseRecord] = Field(default_factory=dict)
    errors: list[ErrorLogEntry] = Field(default_factory=list)
    lessons: list[Lesson] = Field(default_factory=list)
    started_at: datetime | None = None
    updated_at: datetime | None = None

    def phase(self, ordinal: int) -> Phase | None:
        for phase in self.phases:
            if phase.ordinal == ordinal:
                return phase
        return None

    def tasks_for(self, phase: int, milestone: str | None = None) -> list[AgentTask]:
        return [
            task
            for task in self.tasks.values()
            if task.phase == phase and (milestone is None or task.milestone == milestone)
        ]

    def live_tasks(self, phase: int, milestone: str | None = None) -> list[AgentTask]:
        """Tasks that still count toward completion (not replaced by a fallback)."""
        return [t for t in self.tasks_for(phase, milestone) if t.superseded_by is None]

    def tasks_with_status(self, *statuses: TaskStatus) -> list[AgentTask]:
        return [task for task in self.tasks.values() if task.status in statuses]

    @property
    def current_phase(self) -> Phase | None:
        """The phase in flight, else the first one not yet completed."""
        for phase in self.phases:
            if phase.status in (PhaseStatus.IN_PROGRESS, PhaseStatus.BLOCKED):
                return phase
        for phase in self.phases:
            if phase.status != PhaseStatus.COMPLETED:
                return phase
        return None

    @property
    def progress(self) -> float:
        """Percentage of milestones completed across all phases."""
        milestones = [m for p in self.phases for m in p.milestones]
        if not milestones:
            return 0.0
        done = sum(1 for m in milestones if m.status == MilestoneStatus.COMPLETED)
        return round(100.0 * done / len(milestones), 1)
