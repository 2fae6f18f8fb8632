"""Assemble a ready-to-run scheduler from a plan and configuration."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from ..agent.base import Agent
from ..config import ConductorConfig, get_config
from ..errors import AgentNotRegisteredError
from ..ids import IdSequence
from ..observability.ledger import ExecutionLedger
from ..recovery.checkpoints import CheckpointStore
from ..recovery.circuit import CircuitBreaker
from ..recovery.classifier import ErrorClassifier
from ..recovery.policy import RecoveryPolicyEngine
from .conflicts import ConflictHandler
from .dispatcher import AgentTaskDispatcher
from .events import EventBus
from .plan import Plan
from .scheduler import MilestoneValidator, PhaseScheduler, ValidationGate

logger = logging.getLogger(__name__)


def build_orchestrator(
    plan: Plan,
    agents: Mapping[str, Agent] | None = None,
    config: ConductorConfig | None = None,
    *,
    ids: IdSequence | None = None,
    events: EventBus | None = None,
    ledger: ExecutionLedger | None = None,
    classifier: ErrorClassifier | None = None,
    validation_gate: ValidationGate | None = None,
    validators: Mapping[str, MilestoneValidator] | None = None,
    goal: str | None = None,
) -> PhaseScheduler:
    """Wire dispatcher, recovery components and scheduler for ``plan``.

    Agents declared with a ``factory`` in the plan are instantiated unless
    ``agents`` already provides that type.

    Raises:
        AgentNotRegisteredError: If a plan agent type has no implementation.
    """
    config = config or get_config()
    ids = ids or IdSequence()

    registered: dict[str, Agent] = plan.load_agents()
    registered.update(agents or {})
    missing = [a for a in plan.agent_types if a not in registered]
    if missing:
        raise AgentNotRegisteredError(missing)

    if ledger is None and config.ledger.path:
        ledger = ExecutionLedger(
            config.ledger.path
            if config.ledger.path == ":memory:"
            else Path(config.ledger.path).expanduser()
        )

    run_goal = goal if goal is not None else plan.goal
    dispatcher = AgentTaskDispatcher(
        registered,
        classifier=classifier,
        policy=RecoveryPolicyEngine(config.recovery.retry),
        circuit=CircuitBreaker(
            threshold=config.circuit.threshold,
            window=config.circuit.window,
            cooldown=config.circuit.cooldown,
        ),
        ledger=ledger,
        concurrency=plan.concurrency(),
        default_concurrency=config.dispatch.default_concurrency,
        max_workers=config.dispatch.max_workers,
        attempt_timeout=config.dispatch.attempt_timeout or None,
        cancel_grace=config.dispatch.cancel_grace,
        goal=run_goal,
    )

    checkpoint_dir = config.checkpoints.directory
    checkpoints = CheckpointStore(
        ids,
        max_checkpoints=config.checkpoints.max_checkpoints,
        max_age=config.checkpoints.max_age or None,
        directory=Path(checkpoint_dir).expanduser() if checkpoint_dir else None,
    )

    events = events or EventBus()
    logger.debug(
        "Built orchestrator for plan '%s' with agents: %s",
        plan.name,
        ", ".join(sorted(registered)),
    )
    return PhaseScheduler(
        plan,
        dispatcher,
        checkpoints=checkpoints,
        events=events,
        conflicts=ConflictHandler(events, config.scheduler.pause_action_url),
        ids=ids,
        validation_gate=validation_gate,
        validators=validators,
        auto_advance=config.scheduler.auto_advance,
        checkpoint_before_dispatch=config.checkpoints.before_dispatch,
        persist_interval=config.checkpoints.persist_interval if checkpoint_dir else None,
        poll_interval=config.scheduler.poll_interval,
        goal=run_goal,
    )
