"""Exceptions raised by conductor components.

Agent failures never surface as exceptions: they are classified and routed
through recovery. These exceptions cover operator and programming errors such
as a malformed plan or an unknown checkpoint id.
"""

from __future__ import annotations


class ConductorError(Exception):
    """Base class for conductor errors."""


class PlanError(ConductorError, ValueError):
    """A phase plan is malformed or inconsistent."""


class ConfigError(ConductorError, ValueError):
    """Configuration values are invalid."""


class PhaseNotFoundError(ConductorError, LookupError):
    """No phase with the requested ordinal exists."""

    def __init__(self, ordinal: int):
        super().__init__(f"Phase {ordinal} does not exist")
        self.ordinal = ordinal


class CheckpointNotFoundError(ConductorError, LookupError):
    """No checkpoint with the requested id exists."""

    def __init__(self, checkpoint_id: str | None):
        message = (
            f"Checkpoint '{checkpoint_id}' not found"
            if checkpoint_id
            else "No checkpoint available"
        )
        super().__init__(message)
        self.checkpoint_id = checkpoint_id


class LedgerError(ConductorError):
    """An execution record violates the ledger write contract."""


class AgentNotRegisteredError(ConductorError, LookupError):
    """A plan references an agent type with no registered implementation."""

    def __init__(self, agent_types: list[str]):
        names = ", ".join(sorted(agent_types))
        super().__init__(f"No agent registered for: {names}")
        self.agent_types = agent_types
