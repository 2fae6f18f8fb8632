"""Data models for the execution ledger."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RETRIED = "retried"  # Attempt group ended but the task will run again
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExecutionRecord:
    """One task attempt-group as written to the ledger.

    Durations are in seconds. ``cpu_usage`` (percent) and ``memory_usage``
    (MB) are optional hints taken from the agent result metadata.
    """

    agent_type: str
    task_id: str
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime | None
    actual_duration: float
    goal: str = ""
    task_description: str = ""
    phase: int | None = None
    milestone: str | None = None
    estimated_duration: float | None = None
    retry_count: int = 0
    error_type: str | None = None
    error_category: str | None = None
    error_message: str | None = None
    cpu_usage: float | None = None
    memory_usage: float | None = None
    context: dict[str, Any] = field(default_factory=dict)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "agent_type": self.agent_type,
            "task_id": self.task_id,
            "task_description": self.task_description,
            "phase": self.phase,
            "milestone": self.milestone,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "estimated_duration": self.estimated_duration,
            "actual_duration": self.actual_duration,
            "retry_count": self.retry_count,
            "error_type": self.error_type,
            "error_category": self.error_category,
            "error_message": self.error_message,
            "cpu_usage": self.cpu_usage,
            "memory_usage": self.memory_usage,
            "context": self.context,
        }

    @classmethod
    def from_row(cls, row: Any) -> ExecutionRecord:
        """Create from a sqlite3.Row."""
        return cls(
            id=row["id"],
            goal=row["goal"],
            agent_type=row["agent_type"],
            task_id=row["task_id"],
            task_description=row["task_description"],
            phase=row["phase"],
            milestone=row["milestone"],
            status=ExecutionStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]),
            estimated_duration=row["estimated_duration"],
            actual_duration=row["actual_duration"],
            retry_count=row["retry_count"],
            error_type=row["error_type"],
            error_category=row["error_category"],
            error_message=row["error_message"],
            cpu_usage=row["cpu_usage"],
            memory_usage=row["memory_usage"],
            context=json.loads(row["context"]) if row["context"] else {},
        )


@dataclass
class LedgerFilter:
    """Filter for querying execution records."""

    agent_type: str | None = None
    phase: int | None = None
    statuses: list[ExecutionStatus] | None = None
    since: datetime | None = None
    limit: int = 100


@dataclass
class AgentSummary:
    """Aggregated ledger figures for one agent type."""

    agent_type: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicts: int = 0
    total_retries: int = 0
    average_duration: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_type": self.agent_type,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "total_retries": self.total_retries,
            "average_duration": self.average_duration,
            "success_rate": self.success_rate,
        }
