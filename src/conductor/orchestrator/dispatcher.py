"""Agent task dispatcher.

The dispatcher owns the task queue and every in-flight invocation. For each
task it loops: invoke the agent, classify a failure, ask the recovery policy
what to do, and either retry (after the computed backoff) or hand the
outcome back to the scheduler.

Queue discipline:
- a task waits until every task in ``depends_on`` has completed successfully
- each agent type has a concurrency ceiling; excess tasks stay queued
- queued tasks are taken highest priority first, ties in creation order
- tasks of held phases (paused on a conflict) or cancelled phases stay queued
- tasks whose agent has an open circuit stay queued until the cool-down ends

The dispatcher never touches orchestrator state. It reports task starts and
final outcomes through callbacks bound by the scheduler.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ..agent.base import Agent
from ..agent.models import AgentTask, AgentTaskResult
from ..errors import LedgerError
from ..observability.ledger import ExecutionLedger
from ..observability.models import ExecutionRecord, ExecutionStatus
from ..recovery.circuit import CircuitBreaker
from ..recovery.classifier import (
    ErrorCategory,
    ErrorClassification,
    ErrorClassifier,
    ErrorType,
    RecoveryAction,
    Severity,
)
from ..recovery.policy import (
    RecoveryDecision,
    RecoveryPolicyEngine,
    RetryConfig,
    RetryHistory,
)

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT = "conflict"
    ROLLBACK = "rollback"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"


_LEDGER_STATUS = {
    OutcomeKind.COMPLETED: ExecutionStatus.SUCCESS,
    OutcomeKind.FAILED: ExecutionStatus.FAILED,
    OutcomeKind.CONFLICT: ExecutionStatus.CONFLICT,
    OutcomeKind.ROLLBACK: ExecutionStatus.RETRIED,
    OutcomeKind.CIRCUIT_OPEN: ExecutionStatus.RETRIED,
    OutcomeKind.CANCELLED: ExecutionStatus.CANCELLED,
}

CANCELLED_CLASSIFICATION = ErrorClassification(
    type=ErrorType.FATAL,
    category=ErrorCategory.CANCELLED,
    severity=Severity.MEDIUM,
    recovery_action=RecoveryAction.SKIP,
    retryable=False,
    requires_human_intervention=False,
    message="Task cancelled",
    description="Task cancelled",
)


@dataclass
class DispatchOutcome:
    """Final result of dispatching one task."""

    task: AgentTask
    kind: OutcomeKind
    started_at: datetime
    completed_at: datetime
    result: AgentTaskResult | None = None
    classification: ErrorClassification | None = None
    decision: RecoveryDecision | None = None
    history: RetryHistory | None = None
    invoked: bool = True
    circuit_opened: bool = False

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.COMPLETED

    @property
    def attempts(self) -> int:
        return self.history.total_attempts if self.history else 0

    @property
    def retry_count(self) -> int:
        return max(self.attempts - 1, 0)

    @property
    def error_message(self) -> str | None:
        if self.result is not None and self.result.error:
            return self.result.error
        if self.classification is not None:
            return self.classification.message or self.classification.description
        return None


StartedCallback = Callable[[AgentTask, datetime], None]
OutcomeCallback = Callable[[DispatchOutcome], None]


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class AgentTaskDispatcher:
    """Queue, invoke and recover agent tasks.

    Args:
        agents: Agent implementation per agent type.
        classifier: Failure classifier.
        policy: Recovery policy engine.
        circuit: Circuit breaker registry.
        ledger: Execution ledger (optional).
        concurrency: Concurrency ceiling per agent type.
        default_concurrency: Ceiling for agent types not in ``concurrency``.
        max_workers: Worker threads running dispatch loops.
        attempt_timeout: Timeout in seconds for a first attempt. Retries use
            the timeout of the error type that caused them, falling back to
            this value.
        cancel_grace: Seconds an in-flight invocation gets after its phase is
            cancelled before its result is abandoned.
        goal: Run goal written to ledger records.
    """

    def __init__(
        self,
        agents: Mapping[str, Agent],
        *,
        classifier: ErrorClassifier | None = None,
        policy: RecoveryPolicyEngine | None = None,
        circuit: CircuitBreaker | None = None,
        ledger: ExecutionLedger | None = None,
        concurrency: Mapping[str, int] | None = None,
        default_concurrency: int = 1,
        max_workers: int = 8,
        attempt_timeout: float | None = None,
        cancel_grace: float = 5.0,
        goal: str = "",
        poll_interval: float = 0.05,
    ):
        self._agents: dict[str, Agent] = dict(agents)
        self.classifier = classifier or ErrorClassifier()
        self.policy = policy or RecoveryPolicyEngine()
        self.circuit = circuit or CircuitBreaker()
        self.ledger = ledger
        self._concurrency = dict(concurrency or {})
        self.default_concurrency = max(default_concurrency, 1)
        self.attempt_timeout = attempt_timeout
        self.cancel_grace = cancel_grace
        self.goal = goal
        self.poll_interval = poll_interval

        self._queued: dict[str, AgentTask] = {}
        # Keyed by (task id, generation) so a rolled-back task can be requeued
        # while its stale invocation is still winding down
        self._running: dict[tuple[str, int], AgentTask] = {}
        self._active: dict[str, int] = defaultdict(int)
        self._succeeded: set[str] = set()
        self._held: set[int] = set()
        self._cancel_events: dict[int, threading.Event] = {}
        self._histories: dict[str, RetryHistory] = {}
        self._closed = False
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

        self._workers = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="conductor-dispatch"
        )
        # Separate pool so an abandoned invocation never blocks a dispatch loop
        self._invoker = ThreadPoolExecutor(
            max_workers=max_workers * 2, thread_name_prefix="conductor-agent"
        )

        self._on_started: StartedCallback | None = None
        self._on_outcome: OutcomeCallback | None = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def bind(self, on_started: StartedCallback, on_outcome: OutcomeCallback) -> None:
        self._on_started = on_started
        self._on_outcome = on_outcome

    def register_agent(self, agent_type: str, agent: Agent) -> None:
        self._agents[agent_type] = agent

    @property
    def agent_types(self) -> list[str]:
        return sorted(self._agents)

    def concurrency_for(self, agent_type: str) -> int:
        return max(self._concurrency.get(agent_type, self.default_concurrency), 1)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def _cancel_event(self, phase: int) -> threading.Event:
        event = self._cancel_events.get(phase)
        if event is None:
            event = threading.Event()
            if self._closed:
                event.set()
            self._cancel_events[phase] = event
        return event

    def submit(self, task: AgentTask) -> None:
        """Queue a task. Call ``pump`` to start eligible work."""
        with self._lock:
            if self._closed:
                logger.warning("Dispatcher closed, dropping task %s", task.id)
                return
            if (task.id, task.generation) in self._running:
                logger.debug("Task %s already running, not queued again", task.id)
                return
            self._queued[task.id] = task
            self._changed.notify_all()

    def pump(self) -> int:
        """Start every queued task that is eligible now.

        Returns:
            Number of tasks launched.
        """
        launched: list[AgentTask] = []
        with self._lock:
            if self._closed:
                return 0
            for task in sorted(self._queued.values(), key=lambda t: (-t.priority, t.sequence)):
                if task.phase in self._held or self._cancel_event(task.phase).is_set():
                    continue
                if any(dep not in self._succeeded for dep in task.depends_on):
                    continue
                if self._active[task.agent_type] >= self.concurrency_for(task.agent_type):
                    continue
                if self.circuit.is_open(task.agent_type):
                    continue
                del self._queued[task.id]
                self._running[(task.id, task.generation)] = task
                self._active[task.agent_type] += 1
                launched.append(task)
            for task in launched:
                self._workers.submit(self._run, task)
        for task in launched:
            logger.debug("Launched %s (%s, priority %d)", task.id, task.agent_type, task.priority)
        return len(launched)

    def discard(self, task_ids: Iterable[str]) -> list[AgentTask]:
        """Remove queued tasks; running ones are unaffected."""
        with self._lock:
            removed = [self._queued.pop(tid) for tid in list(task_ids) if tid in self._queued]
            self._changed.notify_all()
        return removed

    def hold_phase(self, phase: int) -> None:
        with self._lock:
            self._held.add(phase)

    def release_phase(self, phase: int) -> None:
        with self._lock:
            self._held.discard(phase)
            self._changed.notify_all()

    def is_held(self, phase: int) -> bool:
        with self._lock:
            return phase in self._held

    def cancel_phase(self, phase: int) -> list[AgentTask]:
        """Cancel a phase: signal in-flight tasks and drop its queued ones."""
        with self._lock:
            self._cancel_event(phase).set()
            removed = [t for t in self._queued.values() if t.phase == phase]
            for task in removed:
                del self._queued[task.id]
            self._changed.notify_all()
        if removed:
            logger.info("Cancelled %d queued task(s) in phase %d", len(removed), phase)
        return removed

    def reopen_phase(self, phase: int) -> None:
        """Clear a phase's cancellation so its tasks can run again."""
        with self._lock:
            if not self._closed:
                self._cancel_events.pop(phase, None)

    def reconcile(
        self,
        succeeded: Iterable[str],
        queued: Iterable[AgentTask],
        phase: int | None = None,
        forget: Iterable[str] = (),
    ) -> None:
        """Replace the queue and success set after a rollback.

        With ``phase`` only that phase's queued tasks are replaced and only the
        ``forget`` ids leave the success set; other phases are left alone.
        """
        with self._lock:
            fresh = {t.id: t for t in queued if (t.id, t.generation) not in self._running}
            if phase is None:
                self._succeeded = set(succeeded)
                self._queued = fresh
            else:
                self._succeeded.difference_update(forget)
                self._succeeded.update(succeeded)
                self._queued = {tid: t for tid, t in self._queued.items() if t.phase != phase}
                self._queued.update(fresh)
            self._changed.notify_all()

    def mark_succeeded(self, task_id: str) -> None:
        """Treat a task as successfully completed for dependency gating."""
        with self._lock:
            self._succeeded.add(task_id)
            self._changed.notify_all()

    def forget_history(self, history_key: str) -> None:
        """Drop the attempt count for a task lineage (see ``AgentTask.history_key``)."""
        with self._lock:
            self._histories.pop(history_key, None)

    def queued_tasks(self, phase: int | None = None) -> list[AgentTask]:
        with self._lock:
            tasks = [t for t in self._queued.values() if phase is None or t.phase == phase]
        return sorted(tasks, key=lambda t: (-t.priority, t.sequence))

    def running_count(self, agent_type: str | None = None) -> int:
        with self._lock:
            if agent_type is None:
                return len(self._running)
            return self._active[agent_type]

    def is_idle(self) -> bool:
        """No task running and no queued task outside held or cancelled phases."""
        with self._lock:
            return self._idle_locked()

    def _idle_locked(self) -> bool:
        if self._running:
            return False
        return all(
            t.phase in self._held or self._cancel_event(t.phase).is_set()
            for t in self._queued.values()
        )

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._lock:
            return self._changed.wait_for(self._idle_locked, timeout=timeout)

    def wait_for_change(self, timeout: float) -> None:
        with self._lock:
            self._changed.wait(timeout=timeout)

    def shutdown(self, grace: float | None = None) -> None:
        """Cancel everything and stop the worker pools.

        In-flight invocations get ``grace`` seconds (default ``cancel_grace``)
        to finish before being abandoned.
        """
        with self._lock:
            self._closed = True
            for event in self._cancel_events.values():
                event.set()
            self._queued.clear()
            self._changed.notify_all()
        grace = self.cancel_grace if grace is None else grace
        self.cancel_grace = grace
        self.wait_idle(timeout=grace + 1.0)
        self._workers.shutdown(wait=False, cancel_futures=True)
        self._invoker.shutdown(wait=False, cancel_futures=True)
        logger.info("Dispatcher shut down")

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    def _run(self, task: AgentTask) -> None:
        outcome: DispatchOutcome | None = None
        try:
            outcome = self.dispatch(task)
        except Exception:
            logger.exception("Dispatch of %s crashed", task.id)
            self.circuit.release_probe(task.agent_type, owner=task.id)
            now = datetime.now()
            outcome = DispatchOutcome(
                task=task,
                kind=OutcomeKind.FAILED,
                started_at=now,
                completed_at=now,
                result=AgentTaskResult.fail("Internal dispatcher error", "DISPATCH_ERROR"),
                invoked=False,
            )
        finally:
            with self._lock:
                self._running.pop((task.id, task.generation), None)
                self._active[task.agent_type] -= 1
                self._changed.notify_all()

        if self._on_outcome is not None and outcome is not None:
            try:
                self._on_outcome(outcome)
            except Exception:
                logger.exception("Outcome handler failed for %s", task.id)
        self.pump()

    def dispatch(self, task: AgentTask) -> DispatchOutcome:
        """Run a task to a final outcome, retrying per the recovery policy.

        Never raises for agent failures. A ``circuit_open`` outcome means the
        agent was not invoked and no attempt was consumed.
        """
        started_at = datetime.now()
        agent_type = task.agent_type

        if not self.circuit.allow(agent_type, owner=task.id):
            logger.info("Circuit open for %s, task %s not dispatched", agent_type, task.id)
            with self._lock:
                history = self._histories.get(task.history_key)
            return DispatchOutcome(
                task=task,
                kind=OutcomeKind.CIRCUIT_OPEN,
                started_at=started_at,
                completed_at=datetime.now(),
                history=history,
                invoked=False,
            )

        with self._lock:
            history = self._histories.setdefault(task.history_key, RetryHistory(task.history_key))
            cancel = self._cancel_event(task.phase)

        if self._on_started is not None:
            self._on_started(task, started_at)

        agent = self._agents.get(agent_type)
        timeout = self.attempt_timeout
        while True:
            if agent is None:
                result: AgentTaskResult | None = AgentTaskResult.fail(
                    f"No agent registered for type '{agent_type}': not found",
                    "AGENT_NOT_FOUND",
                )
            else:
                result = self._invoke(agent, task, cancel, timeout)

            if result is None:
                history.record(False, "Abandoned after cancellation", ErrorCategory.CANCELLED.value)
                self.circuit.release_probe(agent_type, owner=task.id)
                return self._finish(
                    task, OutcomeKind.CANCELLED, started_at, history,
                    classification=CANCELLED_CLASSIFICATION,
                )

            if result.success:
                history.record(True)
                self.circuit.record_success(agent_type)
                return self._finish(task, OutcomeKind.COMPLETED, started_at, history, result)

            classification = self.classifier.classify(result)
            history.record(
                False,
                result.error_signal or classification.message,
                classification.category.value,
            )
            config = self.policy.config_for(classification.type)
            opened = self._record_circuit_failure(agent_type, classification, config)
            decision = self.policy.decide(classification, history, config)

            if cancel.is_set():
                return self._finish(
                    task, OutcomeKind.CANCELLED, started_at, history, result,
                    CANCELLED_CLASSIFICATION, decision,
                )

            if decision.retries:
                if opened:
                    return self._finish(
                        task, OutcomeKind.CIRCUIT_OPEN, started_at, history, result,
                        classification, decision, circuit_opened=True,
                    )
                history.set_last_delay(decision.delay)
                logger.warning(
                    "Task %s attempt %d failed (%s), %s in %.2fs",
                    task.id,
                    history.total_attempts,
                    classification.category.value,
                    decision.action.value,
                    decision.delay,
                )
                if decision.delay > 0 and cancel.wait(decision.delay):
                    return self._finish(
                        task, OutcomeKind.CANCELLED, started_at, history, result,
                        CANCELLED_CLASSIFICATION, decision,
                    )
                if not self.circuit.allow(agent_type, owner=task.id):
                    # Another task of this agent opened the breaker meanwhile
                    return self._finish(
                        task, OutcomeKind.CIRCUIT_OPEN, started_at, history, result,
                        classification, decision,
                    )
                task = task.model_copy(update={"retry_count": task.retry_count + 1})
                timeout = config.timeout or self.attempt_timeout
                continue

            if decision.action == RecoveryAction.PAUSE_WORKFLOW:
                kind = OutcomeKind.CONFLICT
            elif decision.action == RecoveryAction.ROLLBACK:
                kind = OutcomeKind.ROLLBACK
            else:
                kind = OutcomeKind.FAILED
            return self._finish(
                task, kind, started_at, history, result, classification, decision,
                circuit_opened=opened,
            )

    def _record_circuit_failure(
        self,
        agent_type: str,
        classification: ErrorClassification,
        config: RetryConfig,
    ) -> bool:
        if classification.recovery_action == RecoveryAction.CIRCUIT_BREAK:
            self.circuit.trip(agent_type, classification.category.value)
            return True
        return self.circuit.record_failure(
            agent_type,
            threshold=config.circuit_breaker_threshold if classification.retryable else None,
            counted=classification.retryable,
        )

    def _invoke(
        self,
        agent: Agent,
        task: AgentTask,
        cancel: threading.Event,
        timeout: float | None,
    ) -> AgentTaskResult | None:
        """Call the agent on the invoker pool, honouring timeout and cancellation.

        Returns None when the phase was cancelled and the agent did not
        return within the grace period.
        """
        future = self._invoker.submit(self._call_agent, agent, task)
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            step = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    logger.warning("Task %s timed out after %.1fs", task.id, timeout)
                    return AgentTaskResult.fail(
                        f"Agent invocation timed out after {timeout:.1f}s", "TIMEOUT"
                    )
                step = min(step, remaining)
            try:
                return future.result(timeout=step)
            except FutureTimeout:
                pass
            if cancel.is_set():
                try:
                    return future.result(timeout=self.cancel_grace)
                except FutureTimeout:
                    logger.warning(
                        "Task %s did not return within %.1fs grace, abandoning",
                        task.id,
                        self.cancel_grace,
                    )
                    return None

    @staticmethod
    def _call_agent(agent: Agent, task: AgentTask) -> AgentTaskResult:
        try:
            if not agent.can_handle_task(task):
                return AgentTaskResult.fail(
                    f"Agent '{task.agent_type}' cannot handle task {task.id}: "
                    "invalid configuration",
                    "TASK_REJECTED",
                )
            result = agent.perform_task(task.model_copy(deep=True))
            if isinstance(result, AgentTaskResult):
                return result
            return AgentTaskResult.model_validate(result)
        except Exception as e:
            logger.warning("Agent %s raised on %s", task.agent_type, task.id, exc_info=True)
            message = str(e)
            return AgentTaskResult.fail(
                f"{type(e).__name__}: {message}" if message else type(e).__name__,
                type(e).__name__,
            )

    def _finish(
        self,
        task: AgentTask,
        kind: OutcomeKind,
        started_at: datetime,
        history: RetryHistory,
        result: AgentTaskResult | None = None,
        classification: ErrorClassification | None = None,
        decision: RecoveryDecision | None = None,
        circuit_opened: bool = False,
    ) -> DispatchOutcome:
        completed_at = datetime.now()
        history.finished_at = completed_at
        outcome = DispatchOutcome(
            task=task,
            kind=kind,
            started_at=started_at,
            completed_at=completed_at,
            result=result,
            classification=classification,
            decision=decision,
            history=history,
            circuit_opened=circuit_opened,
        )
        with self._lock:
            if kind == OutcomeKind.COMPLETED:
                self._succeeded.add(task.id)
            if kind in (OutcomeKind.COMPLETED, OutcomeKind.FAILED, OutcomeKind.CANCELLED):
                # Attempt counter survives rollbacks until the lineage finishes
                self._histories.pop(task.history_key, None)
            self._changed.notify_all()

        if kind == OutcomeKind.COMPLETED:
            logger.info("Task %s completed after %d attempt(s)", task.id, outcome.attempts)
        elif kind == OutcomeKind.CONFLICT:
            logger.warning("Task %s reported a conflict: %s", task.id, outcome.error_message)
        else:
            logger.error("Task %s ended %s: %s", task.id, kind.value, outcome.error_message)

        self._record(outcome)
        return outcome

    def _record(self, outcome: DispatchOutcome) -> None:
        if self.ledger is None or not outcome.invoked:
            return
        task = outcome.task
        classification = outcome.classification
        status = _LEDGER_STATUS[outcome.kind]
        if (
            status == ExecutionStatus.FAILED
            and classification is not None
            and classification.category == ErrorCategory.NETWORK_TIMEOUT
        ):
            status = ExecutionStatus.TIMEOUT
        metadata = outcome.result.metadata if outcome.result else {}
        record = ExecutionRecord(
            goal=self.goal,
            agent_type=task.agent_type,
            task_id=task.id,
            task_description=task.description,
            phase=task.phase,
            milestone=task.milestone,
            status=status,
            started_at=outcome.started_at,
            completed_at=outcome.completed_at,
            estimated_duration=task.estimated_duration,
            actual_duration=(outcome.completed_at - outcome.started_at).total_seconds(),
            retry_count=outcome.retry_count,
            error_type=classification.type.value if classification else None,
            error_category=classification.category.value if classification else None,
            error_message=None if outcome.succeeded else outcome.error_message,
            cpu_usage=_as_float(metadata.get("cpu_usage")),
            memory_usage=_as_float(metadata.get("memory_usage")),
            context={
                "attempts": outcome.attempts,
                "decision": outcome.decision.action.value if outcome.decision else None,
                "files_created": outcome.result.files_created if outcome.result else [],
                "files_modified": outcome.result.files_modified if outcome.result else [],
            },
        )
        try:
            self.ledger.append(record)
        except (sqlite3.Error, LedgerError):
            logger.exception("Failed to append ledger record for %s", task.id)
