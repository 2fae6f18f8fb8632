"""Agent contract consumed by the dispatcher.

An agent is anything that can take an ``AgentTask`` and return an
``AgentTaskResult``. The orchestrator never looks inside an agent beyond
these two methods.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from .models import AgentTask, AgentTaskResult


class Agent(ABC):
    """Base class for worker agents."""

    #: Agent type handled by this implementation (informational).
    agent_type: str = ""

    @abstractmethod
    def perform_task(self, task: AgentTask) -> AgentTaskResult:
        """Execute the task and report the outcome.

        Implementations should return a failed result rather than raise;
        an exception is converted into a failed result by the dispatcher.
        """

    def can_handle_task(self, task: AgentTask) -> bool:
        return not self.agent_type or task.agent_type == self.agent_type


class FunctionAgent(Agent):
    """Adapt a plain callable into an agent.

    Example:
        agent = FunctionAgent("builder", lambda task: AgentTaskResult.ok("built"))
    """

    def __init__(
        self,
        agent_type: str,
        func: Callable[[AgentTask], AgentTaskResult],
        can_handle: Callable[[AgentTask], bool] | None = None,
    ):
        self.agent_type = agent_type
        self._func = func
        self._can_handle = can_handle

    def perform_task(self, task: AgentTask) -> AgentTaskResult:
        return self._func(task)

    def can_handle_task(self, task: AgentTask) -> bool:
        if self._can_handle is not None:
            return self._can_handle(task)
        return super().can_handle_task(task)


class EchoAgent(Agent):
    """Agent that succeeds immediately, echoing the task description.

    Used by the bundled sample plan so a workflow can be dry-run end to end.
    """

    def perform_task(self, task: AgentTask) -> AgentTaskResult:
        return AgentTaskResult.ok(
            output=f"[{task.agent_type}] {task.description or task.milestone}",
            metadata={"dry_run": True},
        )

    def can_handle_task(self, task: AgentTask) -> bool:
        return True
