"""Phase scheduler: the top-level orchestration state machine.

Phase states::

    not_started -> in_progress -> completed
                               -> failed
                               -> blocked -> (resume) -> in_progress

- A phase starts only when all of its prerequisite phases are completed.
- A milestone completes when every live task raised under it has succeeded
  (a task replaced by its fallback no longer counts) and its validator, if
  any, passes.
- A phase completes when every critical milestone is completed, every
  non-critical milestone is finished, and the validation gate passes.
- A conflict blocks the phase; only ``resume`` unblocks it.
- A terminal failure of a critical milestone with no fallback fails the
  phase and cancels its outstanding tasks.

Every mutation of the orchestrator state goes through this class while it
holds ``self._lock``. The dispatcher reports starts and outcomes from worker
threads; they are applied here one at a time, in completion order.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..agent.models import AgentTask, AgentTaskResult, TaskStatus
from ..errors import CheckpointNotFoundError, PhaseNotFoundError
from ..ids import IdSequence
from ..recovery.checkpoints import CheckpointStore
from ..recovery.classifier import ErrorCategory
from ..state import (
    ErrorLogEntry,
    Lesson,
    LessonCategory,
    Milestone,
    MilestoneStatus,
    OrchestratorState,
    Phase,
    PhaseStatus,
)
from .conflicts import ConflictHandler
from .dispatcher import AgentTaskDispatcher, DispatchOutcome, OutcomeKind
from .events import EventBus, EventType
from .plan import Plan
from .snapshot import DashboardSnapshot, build_snapshot

logger = logging.getLogger(__name__)

ValidationGate = Callable[[Phase, OrchestratorState], bool]
MilestoneValidator = Callable[[Milestone, list[AgentTask]], bool]


@dataclass
class ResumeCommand:
    """Operator instruction to resume a blocked phase.

    With ``accept_conflicts`` the waiting tasks are marked completed on the
    operator's authority; otherwise they are dispatched again.
    """

    phase_id: int
    resolution_note: str = ""
    accept_conflicts: bool = False


@dataclass
class CommandResult:
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)


class PhaseScheduler:
    """Drive a plan's phases to completion.

    Args:
        plan: Static phase plan.
        dispatcher: Dispatcher that runs the tasks.
        checkpoints: Checkpoint store for rollback.
        events: Event bus for lifecycle events.
        conflicts: Conflict handler (built on ``events`` if omitted).
        ids: Id sequence for task ids and checkpoint ids.
        validation_gate: External check run before a phase completes.
        validators: Milestone validators keyed by ``validation_ref``.
        auto_advance: Start dependent phases as soon as they are eligible.
        checkpoint_before_dispatch: Capture a checkpoint on every task start.
        persist_interval: Seconds between periodic checkpoints written to
            the store's directory while ``run`` is looping.
        goal: Run goal; defaults to the plan's.
    """

    def __init__(
        self,
        plan: Plan,
        dispatcher: AgentTaskDispatcher,
        *,
        checkpoints: CheckpointStore | None = None,
        events: EventBus | None = None,
        conflicts: ConflictHandler | None = None,
        ids: IdSequence | None = None,
        validation_gate: ValidationGate | None = None,
        validators: Mapping[str, MilestoneValidator] | None = None,
        auto_advance: bool = True,
        checkpoint_before_dispatch: bool = False,
        persist_interval: float | None = None,
        poll_interval: float = 0.1,
        goal: str | None = None,
    ):
        self.plan = plan
        self.dispatcher = dispatcher
        self.ids = ids or IdSequence()
        self.events = events or EventBus()
        self.conflicts = conflicts or ConflictHandler(self.events)
        self.checkpoints = checkpoints or CheckpointStore(self.ids)
        self.validation_gate = validation_gate
        self.validators = dict(validators or {})
        self.auto_advance = auto_advance
        self.checkpoint_before_dispatch = checkpoint_before_dispatch
        self.persist_interval = persist_interval
        self.poll_interval = poll_interval

        self._state = plan.build_state(goal)
        self._generation = 0
        self._last_persist = time.monotonic()
        self._lock = threading.RLock()
        dispatcher.bind(self._on_started, self._on_outcome)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        """Deep copy of the current state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    def phase_status(self, ordinal: int) -> PhaseStatus:
        with self._lock:
            return self._require_phase(ordinal).status

    def snapshot(self) -> DashboardSnapshot:
        with self._lock:
            state = self._state.model_copy(deep=True)
        return build_snapshot(state, self.dispatcher.circuit)

    def get_status(self) -> dict[str, Any]:
        """Snapshot plus live dispatcher counters, as plain data."""
        status = self.snapshot().to_dict()
        status["queued_tasks"] = len(self.dispatcher.queued_tasks())
        status["running_tasks"] = self.dispatcher.running_count()
        status["checkpoints"] = len(self.checkpoints)
        with self._lock:
            status["pauses"] = {
                str(ordinal): pause.model_dump(mode="json")
                for ordinal, pause in self._state.pauses.items()
            }
        return status

    def blocked_phases(self) -> list[int]:
        with self._lock:
            return [p.ordinal for p in self._state.phases if p.status == PhaseStatus.BLOCKED]

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def start(self) -> list[int]:
        """Start every phase whose prerequisites are already met."""
        with self._lock:
            if self._state.started_at is None:
                self._state.started_at = datetime.now()
            started = []
            for phase in self._state.phases:
                if phase.status == PhaseStatus.NOT_STARTED and not self._unmet(phase):
                    self._start_phase_locked(phase)
                    started.append(phase.ordinal)
        self.dispatcher.pump()
        return started

    def start_phase(self, ordinal: int) -> CommandResult:
        with self._lock:
            phase = self._require_phase(ordinal)
            if phase.status != PhaseStatus.NOT_STARTED:
                return CommandResult(False, f"Phase {ordinal} is already {phase.status.value}")
            unmet = self._unmet(phase)
            if unmet:
                return CommandResult(
                    False,
                    f"Phase {ordinal} waits on prerequisite phase(s) {unmet}",
                    {"unmet": unmet},
                )
            if self._state.started_at is None:
                self._state.started_at = datetime.now()
            self._start_phase_locked(phase)
            status = phase.status
        self.dispatcher.pump()
        return CommandResult(True, f"Phase {ordinal} started", {"status": status.value})

    def resume(self, command: ResumeCommand) -> CommandResult:
        """Resume a blocked phase after a human resolved its conflicts."""
        with self._lock:
            phase = self._state.phase(command.phase_id)
            if phase is None:
                return CommandResult(False, f"Phase {command.phase_id} does not exist")
            if phase.status != PhaseStatus.BLOCKED:
                return CommandResult(
                    False,
                    f"Phase {command.phase_id} is not blocked (status: {phase.status.value})",
                )

            self._capture(phase.ordinal, f"Before resuming phase {phase.ordinal}", "resume")
            pause = self.conflicts.resolve(
                self._state, phase.ordinal, command.resolution_note
            )

            waiting = [
                t for t in self._state.tasks_for(phase.ordinal) if t.status == TaskStatus.WAITING
            ]
            for task in waiting:
                if command.accept_conflicts:
                    task.status = TaskStatus.COMPLETED
                    task.completed_at = datetime.now()
                    task.result = AgentTaskResult.ok(
                        f"Conflict accepted by operator: {command.resolution_note}",
                        metadata={"conflict": task.error},
                    )
                    self.dispatcher.mark_succeeded(task.id)
                else:
                    task.status = TaskStatus.IDLE
                    task.error = None
                    task.error_category = None
                    self.dispatcher.forget_history(task.history_key)
                    self._submit(task)

            phase.status = PhaseStatus.IN_PROGRESS
            phase.status_reason = None
            self._lesson(
                LessonCategory.PATTERN,
                f"Phase {phase.ordinal} resumed after "
                f"{len(pause.conflicts) if pause else 0} conflict(s): "
                f"{command.resolution_note or 'no note'}",
                phase=phase.ordinal,
            )
            self.dispatcher.release_phase(phase.ordinal)
            for milestone in phase.milestones:
                self._evaluate_milestone(phase, milestone)
            self._evaluate_phase(phase)
            status = phase.status
            self._touch()
        self.dispatcher.pump()
        return CommandResult(
            True,
            f"Phase {command.phase_id} resumed",
            {
                "status": status.value,
                "conflicts": len(pause.conflicts) if pause else 0,
                "tasks": [t.id for t in waiting],
            },
        )

    def advance(self, ordinal: int) -> CommandResult:
        """Re-check a phase: start it if eligible, or complete it if its gate now passes."""
        with self._lock:
            phase = self._require_phase(ordinal)
            if phase.status == PhaseStatus.NOT_STARTED:
                return self.start_phase(ordinal)
            if phase.status == PhaseStatus.BLOCKED:
                return CommandResult(False, f"Phase {ordinal} is blocked; resume it first")
            if phase.status != PhaseStatus.IN_PROGRESS:
                return CommandResult(False, f"Phase {ordinal} is already {phase.status.value}")
            self._evaluate_phase(phase)
            status = phase.status
            reason = phase.status_reason
        self.dispatcher.pump()
        if status == PhaseStatus.COMPLETED:
            return CommandResult(True, f"Phase {ordinal} completed", {"status": status.value})
        return CommandResult(
            False,
            f"Phase {ordinal} cannot complete yet: {reason or 'milestones outstanding'}",
            {"status": status.value},
        )

    def rollback(self, checkpoint_id: str | None = None) -> CommandResult:
        """Restore a checkpoint (the latest one by default)."""
        with self._lock:
            checkpoint = (
                self.checkpoints.get(checkpoint_id) if checkpoint_id else self.checkpoints.latest()
            )
            if checkpoint is None:
                return CommandResult(False, str(CheckpointNotFoundError(checkpoint_id)))
            self._restore_locked(checkpoint.checkpoint_id, "operator request")
        self.dispatcher.pump()
        return CommandResult(
            True,
            f"Restored {checkpoint.checkpoint_id}",
            {"checkpoint_id": checkpoint.checkpoint_id, "phase": checkpoint.phase},
        )

    def run(self, timeout: float | None = None) -> bool:
        """Pump work until nothing more can happen without an operator.

        Returns:
            True when settled (all phases finished, blocked, or waiting on a
            gate), False if ``timeout`` expired first.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            self.dispatcher.pump()
            self._maybe_persist()
            if self.dispatcher.is_idle() and self._settled():
                return True
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Run timed out with work outstanding")
                return False
            self.dispatcher.wait_for_change(self.poll_interval)

    def shutdown(self, grace: float | None = None) -> None:
        """Cancel all outstanding work and persist a final checkpoint."""
        self.dispatcher.shutdown(grace)
        with self._lock:
            for task in self._state.tasks.values():
                if not task.is_terminal:
                    task.status = TaskStatus.FAILED
                    task.error = "Cancelled by shutdown"
                    task.error_category = ErrorCategory.CANCELLED.value
                    task.completed_at = datetime.now()
            self._capture(None, "Shutdown", "shutdown")
            self._touch()
        self.checkpoints.persist()

    def persist(self) -> int:
        """Capture a checkpoint now and write pending checkpoints to disk."""
        with self._lock:
            current = self._state.current_phase
            self._capture(current.ordinal if current else None, "Manual checkpoint", "operator")
        return len(self.checkpoints.persist())

    # ------------------------------------------------------------------
    # Dispatcher callbacks
    # ------------------------------------------------------------------

    def _on_started(self, task: AgentTask, started_at: datetime) -> None:
        with self._lock:
            record = self._live_record(task)
            if record is None:
                return
            record.status = TaskStatus.ACTIVE
            if record.started_at is None:
                record.started_at = started_at
            self.events.emit(
                EventType.TASK_STARTED,
                task_id=record.id,
                agent_type=record.agent_type,
                phase=record.phase,
                milestone=record.milestone,
                attempt=record.retry_count + 1,
            )
            if self.checkpoint_before_dispatch:
                self._capture(record.phase, f"Before dispatching {record.id}", "dispatch")
            self._touch()

    def _on_outcome(self, outcome: DispatchOutcome) -> None:
        with self._lock:
            record = self._live_record(outcome.task)
            if record is None:
                logger.debug("Ignoring stale outcome for %s", outcome.task_id)
                return
            phase = self._require_phase(record.phase)
            milestone = phase.milestone(record.milestone)
            record.retry_count = max(record.retry_count, outcome.retry_count)
            if outcome.result is not None:
                record.result = outcome.result

            if outcome.kind == OutcomeKind.COMPLETED:
                self._handle_completed(record, phase, milestone, outcome)
            elif outcome.kind == OutcomeKind.CIRCUIT_OPEN:
                self._handle_circuit_open(record, outcome)
            elif phase.status == PhaseStatus.FAILED:
                self._handle_failed(record, phase, milestone, outcome, cancelled=True)
            elif outcome.kind == OutcomeKind.CONFLICT:
                self._handle_conflict(record, phase, outcome)
            elif outcome.kind == OutcomeKind.ROLLBACK:
                self._handle_rollback(record, phase, milestone, outcome)
            else:
                self._handle_failed(
                    record, phase, milestone, outcome,
                    cancelled=outcome.kind == OutcomeKind.CANCELLED,
                )
            self._touch()
        self.dispatcher.pump()

    def _handle_completed(
        self,
        record: AgentTask,
        phase: Phase,
        milestone: Milestone | None,
        outcome: DispatchOutcome,
    ) -> None:
        record.status = TaskStatus.COMPLETED
        record.completed_at = outcome.completed_at
        record.error = None
        self.events.emit(
            EventType.TASK_COMPLETED,
            task_id=record.id,
            agent_type=record.agent_type,
            phase=record.phase,
            milestone=record.milestone,
            attempts=outcome.attempts,
            output=outcome.result.output if outcome.result else None,
        )
        if outcome.retry_count:
            self._lesson(
                LessonCategory.OPTIMIZATION,
                f"{record.agent_type} recovered {record.id} after "
                f"{outcome.retry_count} retr{'y' if outcome.retry_count == 1 else 'ies'}",
                phase=record.phase,
                agent_type=record.agent_type,
                impact="low",
            )
        if milestone is not None:
            self._evaluate_milestone(phase, milestone)

    def _handle_circuit_open(self, record: AgentTask, outcome: DispatchOutcome) -> None:
        record.status = TaskStatus.IDLE
        if outcome.circuit_opened:
            self._log_error(record, outcome)
            state = self.dispatcher.circuit.state(record.agent_type)
            self.events.emit(
                EventType.CIRCUIT_OPENED,
                agent_type=record.agent_type,
                task_id=record.id,
                failure_count=state.failure_count,
                cooldown=state.cooldown,
            )
        self._submit(record)

    def _handle_conflict(
        self, record: AgentTask, phase: Phase, outcome: DispatchOutcome
    ) -> None:
        classification = outcome.classification or self.dispatcher.classifier.classify(
            outcome.result or outcome.error_message or ""
        )
        record.status = TaskStatus.WAITING
        record.error = outcome.error_message
        record.error_category = classification.category.value
        self._log_error(record, outcome)

        report = self.conflicts.build_report(record, outcome.result, classification)
        self.conflicts.register(self._state, report)
        self.dispatcher.hold_phase(phase.ordinal)
        if phase.status == PhaseStatus.IN_PROGRESS:
            phase.status = PhaseStatus.BLOCKED
            phase.status_reason = report.message
            self.events.emit(
                EventType.PHASE_BLOCKED,
                phase=phase.ordinal,
                name=phase.name,
                reason=report.message,
            )

    def _handle_rollback(
        self,
        record: AgentTask,
        phase: Phase,
        milestone: Milestone | None,
        outcome: DispatchOutcome,
    ) -> None:
        self._log_error(record, outcome)
        checkpoint = self.checkpoints.latest(phase.ordinal)
        if checkpoint is None:
            logger.error("No checkpoint to roll phase %d back to", phase.ordinal)
            self._handle_failed(record, phase, milestone, outcome, cancelled=False)
            return
        self._restore_locked(
            checkpoint.checkpoint_id,
            f"{record.id}: {outcome.error_message or 'rollback'}",
            phase=phase.ordinal,
        )

    def _handle_failed(
        self,
        record: AgentTask,
        phase: Phase,
        milestone: Milestone | None,
        outcome: DispatchOutcome,
        cancelled: bool,
    ) -> None:
        classification = outcome.classification
        record.status = TaskStatus.FAILED
        record.completed_at = outcome.completed_at
        record.error = outcome.error_message or "Task failed"
        record.error_category = (
            ErrorCategory.CANCELLED.value
            if cancelled or classification is None
            else classification.category.value
        )
        self._log_error(record, outcome)
        self.events.emit(
            EventType.TASK_FAILED,
            task_id=record.id,
            agent_type=record.agent_type,
            phase=record.phase,
            milestone=record.milestone,
            category=record.error_category,
            message=record.error,
            recovery_action=outcome.decision.action.value if outcome.decision else None,
        )
        if cancelled or milestone is None:
            return
        if phase.status not in (PhaseStatus.IN_PROGRESS, PhaseStatus.BLOCKED):
            return
        if self._try_fallback(record, phase, milestone):
            return
        self._fail_milestone(phase, milestone, f"{record.id} failed: {record.error}")

    # ------------------------------------------------------------------
    # State transitions (caller holds the lock)
    # ------------------------------------------------------------------

    def _start_phase_locked(self, phase: Phase) -> None:
        phase.status = PhaseStatus.IN_PROGRESS
        phase.started_at = datetime.now()
        phase.status_reason = None
        self.dispatcher.reopen_phase(phase.ordinal)
        logger.info("Phase %d (%s) started", phase.ordinal, phase.name)
        self.events.emit(EventType.PHASE_STARTED, phase=phase.ordinal, name=phase.name)
        self._activate_milestones(phase)
        self._capture(phase.ordinal, f"Phase {phase.ordinal} started", "phase_start")
        self._evaluate_phase(phase)

    def _activate_milestones(self, phase: Phase) -> None:
        for milestone in phase.milestones:
            if milestone.status != MilestoneStatus.PENDING:
                continue
            deps = [phase.milestone(d) for d in milestone.depends_on]
            failed = [d.id for d in deps if d is not None and d.status == MilestoneStatus.FAILED]
            if failed:
                self._fail_milestone(phase, milestone, f"Depends on failed milestone(s) {failed}")
                if phase.status != PhaseStatus.IN_PROGRESS:
                    return
                continue
            if any(d is None or d.status != MilestoneStatus.COMPLETED for d in deps):
                continue
            milestone.status = MilestoneStatus.IN_PROGRESS
            milestone.started_at = datetime.now()
            self._create_tasks(phase, milestone)
            if not milestone.required_agents:
                self._evaluate_milestone(phase, milestone)
                if phase.status != PhaseStatus.IN_PROGRESS:
                    return

    def _create_tasks(self, phase: Phase, milestone: Milestone) -> None:
        created: dict[str, AgentTask] = {}
        for agent_type in milestone.required_agents:
            created[agent_type] = self._new_task(phase, milestone, agent_type)
        for agent_type, task in created.items():
            settings = self.plan.settings_for(agent_type)
            task.depends_on = [created[d].id for d in settings.depends_on if d in created]
        for task in created.values():
            self._state.tasks[task.id] = task
            self._submit(task)
        logger.debug(
            "Milestone %s raised %d task(s): %s",
            milestone.id,
            len(created),
            ", ".join(t.id for t in created.values()),
        )

    def _new_task(self, phase: Phase, milestone: Milestone, agent_type: str) -> AgentTask:
        settings = self.plan.settings_for(agent_type)
        return AgentTask(
            id=self.ids.next(f"{phase.ordinal}-{milestone.id}-{agent_type}"),
            agent_type=agent_type,
            phase=phase.ordinal,
            milestone=milestone.id,
            description=milestone.description or milestone.name,
            priority=self.plan.task_priority(phase.ordinal, agent_type),
            sequence=self.ids.next_int("task-sequence"),
            fallback_agent=settings.fallback,
            estimated_duration=settings.estimated_duration,
            generation=self._generation,
            lineage=f"{phase.ordinal}-{milestone.id}-{agent_type}",
        )

    def _try_fallback(self, record: AgentTask, phase: Phase, milestone: Milestone) -> bool:
        fallback = record.fallback_agent
        if not fallback or record.superseded_by:
            return False
        replacement = self._new_task(phase, milestone, fallback)
        replacement.fallback_agent = None
        replacement.lineage = f"{record.history_key}>{fallback}"
        replacement.depends_on = list(record.depends_on)
        record.superseded_by = replacement.id
        self._state.tasks[replacement.id] = replacement

        for task in self._state.live_tasks(phase.ordinal, milestone.id):
            if record.id in task.depends_on:
                task.depends_on = [replacement.id if d == record.id else d for d in task.depends_on]
                if task.status == TaskStatus.IDLE:
                    self._submit(task)
        self._submit(replacement)
        logger.warning("Re-issuing %s to fallback agent %s", record.id, fallback)
        self._lesson(
            LessonCategory.PATTERN,
            f"{record.agent_type} failed on {milestone.id}; fell back to {fallback}",
            phase=phase.ordinal,
            agent_type=record.agent_type,
        )
        return True

    def _fail_milestone(self, phase: Phase, milestone: Milestone, reason: str) -> None:
        if milestone.is_terminal:
            return
        milestone.status = MilestoneStatus.FAILED
        milestone.error = reason
        milestone.completed_at = datetime.now()
        logger.error("Milestone %s failed: %s", milestone.id, reason)

        pending = [
            t
            for t in self._state.live_tasks(phase.ordinal, milestone.id)
            if t.status in (TaskStatus.IDLE, TaskStatus.WAITING)
        ]
        self.dispatcher.discard(t.id for t in pending)
        for task in pending:
            self._cancel_record(task, f"Milestone {milestone.id} failed")

        self._lesson(
            LessonCategory.FAILURE,
            f"Milestone {milestone.id} failed: {reason}",
            phase=phase.ordinal,
            impact="high" if milestone.critical else "medium",
        )
        if milestone.critical:
            self._fail_phase(phase, f"Critical milestone '{milestone.id}' failed: {reason}")
        else:
            self._activate_milestones(phase)
            self._evaluate_phase(phase)

    def _fail_phase(self, phase: Phase, reason: str) -> None:
        if phase.status != PhaseStatus.IN_PROGRESS:
            # A blocked phase is re-evaluated on resume
            phase.status_reason = reason
            return
        phase.status = PhaseStatus.FAILED
        phase.status_reason = reason
        phase.completed_at = datetime.now()
        self.dispatcher.cancel_phase(phase.ordinal)
        for task in self._state.tasks_for(phase.ordinal):
            if task.status in (TaskStatus.IDLE, TaskStatus.WAITING):
                self._cancel_record(task, f"Phase {phase.ordinal} failed")
        for milestone in phase.milestones:
            if not milestone.is_terminal:
                milestone.status = MilestoneStatus.FAILED
                milestone.error = "Phase failed"
        logger.error("Phase %d (%s) failed: %s", phase.ordinal, phase.name, reason)
        self.events.emit(EventType.PHASE_FAILED, phase=phase.ordinal, name=phase.name, reason=reason)

    def _evaluate_milestone(self, phase: Phase, milestone: Milestone) -> None:
        if milestone.status != MilestoneStatus.IN_PROGRESS:
            return
        tasks = self._state.live_tasks(phase.ordinal, milestone.id)
        if not all(t.succeeded for t in tasks):
            return

        ref = milestone.validation_ref
        if ref:
            validator = self.validators.get(ref)
            if validator is None:
                logger.warning("No validator registered for '%s'; accepting milestone", ref)
            else:
                try:
                    passed = bool(validator(milestone, [t.model_copy() for t in tasks]))
                except Exception:
                    logger.exception("Validator '%s' raised", ref)
                    passed = False
                if not passed:
                    self._fail_milestone(phase, milestone, f"Validation '{ref}' did not pass")
                    return

        milestone.status = MilestoneStatus.COMPLETED
        milestone.completed_at = datetime.now()
        logger.info("Milestone %s completed", milestone.id)
        self._activate_milestones(phase)
        self._evaluate_phase(phase)

    def _evaluate_phase(self, phase: Phase) -> None:
        if phase.status != PhaseStatus.IN_PROGRESS:
            return
        failed = [m.id for m in phase.milestones if m.critical and m.status == MilestoneStatus.FAILED]
        if failed:
            self._fail_phase(phase, phase.status_reason or f"Critical milestone(s) {failed} failed")
            return
        for milestone in phase.milestones:
            done = (
                milestone.status == MilestoneStatus.COMPLETED
                if milestone.critical
                else milestone.is_terminal
            )
            if not done:
                return

        if self.validation_gate is not None:
            try:
                passed = bool(self.validation_gate(phase.model_copy(deep=True), self._state))
            except Exception:
                logger.exception("Validation gate raised for phase %d", phase.ordinal)
                passed = False
            if not passed:
                phase.status_reason = "Validation gate did not pass"
                logger.warning("Phase %d held by validation gate", phase.ordinal)
                return

        self._complete_phase(phase)

    def _complete_phase(self, phase: Phase) -> None:
        phase.status = PhaseStatus.COMPLETED
        phase.completed_at = datetime.now()
        phase.status_reason = None
        next_phases = [p.ordinal for p in self._state.phases if phase.ordinal in p.prerequisites]
        logger.info("Phase %d (%s) completed", phase.ordinal, phase.name)
        self.events.emit(
            EventType.PHASE_ADVANCED,
            phase=phase.ordinal,
            name=phase.name,
            next_phases=next_phases,
        )
        self._lesson(
            LessonCategory.SUCCESS,
            f"Phase {phase.ordinal} ({phase.name}) completed",
            phase=phase.ordinal,
        )
        self._capture(phase.ordinal, f"Phase {phase.ordinal} completed", "phase_complete")
        if self.auto_advance:
            for candidate in self._state.phases:
                if candidate.status == PhaseStatus.NOT_STARTED and not self._unmet(candidate):
                    self._start_phase_locked(candidate)

    def _restore_locked(self, checkpoint_id: str, reason: str, phase: int | None = None) -> None:
        """Swap in a checkpoint's state.

        With ``phase`` only that phase's record, tasks and pause come from the
        checkpoint and are merged into the live state, so phases running in
        parallel keep their progress. Without it the whole state is replaced.
        """
        restored = self.checkpoints.restore(checkpoint_id)
        live = self._state
        self._generation += 1

        if phase is None:
            # Error log and lessons are history, not state to roll back
            restored.errors = live.errors
            restored.lessons = live.lessons
            self._state = restored
            ordinals = [p.ordinal for p in restored.phases]
            tasks = list(restored.tasks.values())
            dropped: list[str] = []
        else:
            snapshot = restored.phase(phase)
            if snapshot is None:
                raise PhaseNotFoundError(phase)
            index = next(i for i, p in enumerate(live.phases) if p.ordinal == phase)
            live.phases[index] = snapshot
            dropped = [tid for tid, t in live.tasks.items() if t.phase == phase]
            for tid in dropped:
                del live.tasks[tid]
            tasks = [t for t in restored.tasks.values() if t.phase == phase]
            live.tasks.update((t.id, t) for t in tasks)
            live.pauses.pop(phase, None)
            if phase in restored.pauses:
                live.pauses[phase] = restored.pauses[phase]
            ordinals = [phase]

        for ordinal in ordinals:
            if self._require_phase(ordinal).status != PhaseStatus.FAILED:
                self.dispatcher.reopen_phase(ordinal)
            if ordinal in self._state.pauses:
                self.dispatcher.hold_phase(ordinal)
            else:
                self.dispatcher.release_phase(ordinal)
        requeue = []
        for task in tasks:
            if task.status == TaskStatus.ACTIVE:
                task.status = TaskStatus.IDLE
            task.generation = self._generation
            if task.status == TaskStatus.IDLE:
                requeue.append(task.model_copy())
        self.dispatcher.reconcile(
            succeeded=[t.id for t in tasks if t.succeeded],
            queued=requeue,
            phase=phase,
            forget=dropped,
        )

        checkpoint = self.checkpoints.get(checkpoint_id)
        logger.warning("Rolled back to %s: %s", checkpoint_id, reason)
        self.events.emit(
            EventType.CHECKPOINT_RESTORED,
            checkpoint_id=checkpoint_id,
            phase=checkpoint.phase if checkpoint else None,
            reason=reason,
            requeued=[t.id for t in requeue],
        )
        self._lesson(
            LessonCategory.FAILURE,
            f"Rolled back to {checkpoint_id}: {reason}",
            phase=checkpoint.phase if checkpoint else None,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_phase(self, ordinal: int) -> Phase:
        phase = self._state.phase(ordinal)
        if phase is None:
            raise PhaseNotFoundError(ordinal)
        return phase

    def _unmet(self, phase: Phase) -> list[int]:
        unmet = []
        for ordinal in phase.prerequisites:
            prereq = self._state.phase(ordinal)
            if prereq is None or prereq.status != PhaseStatus.COMPLETED:
                unmet.append(ordinal)
        return unmet

    def _live_record(self, task: AgentTask) -> AgentTask | None:
        """The state record for a dispatcher task, unless it is stale or finished."""
        record = self._state.tasks.get(task.id)
        if record is None or record.generation != task.generation or record.is_terminal:
            return None
        return record

    def _submit(self, task: AgentTask) -> None:
        task.generation = self._generation
        self.dispatcher.submit(task.model_copy())

    def _cancel_record(self, task: AgentTask, reason: str) -> None:
        task.status = TaskStatus.FAILED
        task.error = reason
        task.error_category = ErrorCategory.CANCELLED.value
        task.completed_at = datetime.now()

    def _capture(self, phase: int | None, description: str, triggered_by: str) -> str:
        return self.checkpoints.capture(
            phase,
            self._state,
            agent_states=self.dispatcher.circuit.snapshot(),
            description=description,
            triggered_by=triggered_by,
        )

    def _log_error(self, record: AgentTask, outcome: DispatchOutcome) -> None:
        c = outcome.classification
        self._state.errors.append(
            ErrorLogEntry(
                phase=record.phase,
                milestone=record.milestone,
                agent_type=record.agent_type,
                task_id=record.id,
                error_type=c.type.value if c else "fatal",
                category=c.category.value if c else ErrorCategory.UNKNOWN.value,
                severity=c.severity.value if c else "high",
                message=outcome.error_message or "Unknown error",
            )
        )

    def _lesson(
        self,
        category: LessonCategory,
        description: str,
        phase: int | None = None,
        agent_type: str | None = None,
        impact: str = "medium",
    ) -> None:
        self._state.lessons.append(
            Lesson(
                category=category,
                description=description,
                phase=phase,
                agent_type=agent_type,
                impact=impact,
            )
        )

    def _touch(self) -> None:
        self._state.updated_at = datetime.now()

    def _settled(self) -> bool:
        with self._lock:
            for task in self._state.tasks.values():
                if task.status == TaskStatus.ACTIVE:
                    return False
                if task.status == TaskStatus.IDLE:
                    phase = self._state.phase(task.phase)
                    if phase is not None and phase.status == PhaseStatus.IN_PROGRESS:
                        return False
            return True

    def _maybe_persist(self) -> None:
        if self.persist_interval is None:
            return
        now = time.monotonic()
        if now - self._last_persist < self.persist_interval:
            return
        self._last_persist = now
        with self._lock:
            current = self._state.current_phase
            self._capture(current.ordinal if current else None, "Periodic checkpoint", "interval")
        self.checkpoints.persist()
