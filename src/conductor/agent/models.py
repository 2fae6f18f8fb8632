"""Data models shared between the orchestrator and agent implementations."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"  # Paused on a conflict until resumed


class AgentTaskResult(BaseModel):
    """Result returned by an agent for one task invocation.

    This is the only thing the orchestrator reads from an agent. Conflict
    details travel in ``metadata`` (for example ``metadata["vulnerabilities"]``).
    """

    success: bool
    output: str | None = None
    error: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, output: str | None = None, **kwargs: Any) -> AgentTaskResult:
        return cls(success=True, output=output, **kwargs)

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: str | None = None,
        **metadata: Any,
    ) -> AgentTaskResult:
        return cls(success=False, error=error, error_code=error_code, metadata=metadata)

    @property
    def error_signal(self) -> str:
        """Error code and message combined into one classifiable string."""
        parts = [p for p in (self.error_code, self.error) if p]
        return ": ".join(parts)


class AgentTask(BaseModel):
    """A unit of work for one agent under one milestone."""

    id: str
    agent_type: str
    phase: int
    milestone: str
    description: str = ""
    priority: int = 0
    sequence: int = 0
    status: TaskStatus = TaskStatus.IDLE
    depends_on: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    result: AgentTaskResult | None = None
    error: str | None = None
    error_category: str | None = None
    fallback_agent: str | None = None
    superseded_by: str | None = None
    estimated_duration: float | None = None
    generation: int = 0
    # Shared by every re-issue of the same phase/milestone/agent slot
    lineage: str = ""

    @property
    def history_key(self) -> str:
        """Key the retry history is kept under; survives rollbacks that re-mint the id."""
        return self.lineage or self.id

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def duration(self) -> float | None:
        """Wall-clock seconds between start and completion, if both are known."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
