"""Shared fixtures: scripted agents, fast retry policies and plan builders."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

import pytest

from conductor.agent.base import Agent
from conductor.agent.models import AgentTask, AgentTaskResult
from conductor.config import reset_config
from conductor.ids import IdSequence
from conductor.orchestrator.dispatcher import AgentTaskDispatcher
from conductor.orchestrator.events import EventBus
from conductor.orchestrator.plan import Plan, parse_plan
from conductor.orchestrator.scheduler import PhaseScheduler
from conductor.recovery.checkpoints import CheckpointStore
from conductor.recovery.circuit import CircuitBreaker
from conductor.recovery.classifier import ErrorType
from conductor.recovery.policy import BackoffStrategy, RecoveryPolicyEngine, RetryConfig

FAST_RETRY_CONFIGS = {
    ErrorType.TRANSIENT: RetryConfig(
        max_attempts=3, strategy=BackoffStrategy.FIXED, base_delay=0.0, max_delay=0.0,
        circuit_breaker_threshold=50,
    ),
    ErrorType.RETRIABLE: RetryConfig(
        max_attempts=3, strategy=BackoffStrategy.FIXED, base_delay=0.0, max_delay=0.0,
        circuit_breaker_threshold=50,
    ),
}


class ScriptedAgent(Agent):
    """Agent that plays back a script of results, one per call.

    Each script entry is an ``AgentTaskResult``, an exception to raise, or a
    callable taking the task. The last entry repeats once the script runs out.
    """

    def __init__(self, agent_type: str, *script: Any, delay: float = 0.0):
        self.agent_type = agent_type
        self.script = list(script) or [AgentTaskResult.ok(f"{agent_type} done")]
        self.delay = delay
        self.calls: list[AgentTask] = []
        self.call_times: list[float] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def perform_task(self, task: AgentTask) -> AgentTaskResult:
        with self._lock:
            index = min(len(self.calls), len(self.script) - 1)
            self.calls.append(task)
            self.call_times.append(time.monotonic())
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            step = self.script[index]
            if isinstance(step, BaseException):
                raise step
            if callable(step):
                return step(task)
            return step
        finally:
            with self._lock:
                self.active -= 1

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def task_ids(self) -> list[str]:
        with self._lock:
            return [t.id for t in self.calls]


def ok(output: str = "done", **kwargs: Any) -> AgentTaskResult:
    return AgentTaskResult.ok(output, **kwargs)


def fail(error: str, code: str | None = None, **metadata: Any) -> AgentTaskResult:
    return AgentTaskResult.fail(error, code, **metadata)


def build_plan(phases: list[dict[str, Any]], agents: dict[str, Any] | None = None) -> Plan:
    return parse_plan({"name": "test", "phases": phases, "agents": agents or {}})


def single_phase(*milestones: dict[str, Any], ordinal: int = 1) -> dict[str, Any]:
    return {"ordinal": ordinal, "name": f"Phase {ordinal}", "milestones": list(milestones)}


def milestone(mid: str, agents: Iterable[str], **extra: Any) -> dict[str, Any]:
    return {"id": mid, "name": mid, "agents": list(agents), **extra}


def make_dispatcher(
    agents: dict[str, Agent],
    *,
    circuit: CircuitBreaker | None = None,
    retry_configs: dict[ErrorType, RetryConfig] | None = None,
    **kwargs: Any,
) -> AgentTaskDispatcher:
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("cancel_grace", 0.5)
    return AgentTaskDispatcher(
        agents,
        policy=RecoveryPolicyEngine(retry_configs or FAST_RETRY_CONFIGS),
        circuit=circuit or CircuitBreaker(threshold=50, window=60, cooldown=30),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep tests away from the user's config file and environment."""
    monkeypatch.setenv("CONDUCTOR_CONFIG", str(tmp_path / "config.toml"))
    for name in (
        "CONDUCTOR_LOG_LEVEL",
        "CONDUCTOR_MAX_WORKERS",
        "CONDUCTOR_LEDGER_PATH",
        "CONDUCTOR_CHECKPOINT_DIR",
        "CONDUCTOR_ATTEMPT_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def ids() -> IdSequence:
    return IdSequence()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def make_scheduler(ids, events):
    """Factory building a scheduler over scripted agents.

    Every scheduler built is shut down at teardown.
    """
    built: list[PhaseScheduler] = []

    def factory(
        plan: Plan,
        agents: dict[str, Agent],
        *,
        dispatcher_kwargs: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> PhaseScheduler:
        dispatcher = make_dispatcher(
            agents, concurrency=plan.concurrency(), **(dispatcher_kwargs or {})
        )
        kwargs.setdefault("checkpoints", CheckpointStore(ids, max_checkpoints=50))
        kwargs.setdefault("poll_interval", 0.01)
        scheduler = PhaseScheduler(plan, dispatcher, events=events, ids=ids, **kwargs)
        built.append(scheduler)
        return scheduler

    yield factory
    for scheduler in built:
        scheduler.dispatcher.shutdown(grace=0.1)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
