"""Agent contract and task models."""

from .base import Agent, EchoAgent, FunctionAgent
from .models import AgentTask, AgentTaskResult, TaskStatus

__all__ = [
    "Agent",
    "EchoAgent",
    "FunctionAgent",
    "AgentTask",
    "AgentTaskResult",
    "TaskStatus",
]
