"""Recovery policy: turn a classification plus attempt history into a decision.

``RecoveryPolicyEngine.decide`` is a pure function of its inputs. It never
sleeps, never touches the circuit breaker and never mutates the history it
is given; the dispatcher carries the decision out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .classifier import ErrorClassification, ErrorType, RecoveryAction

logger = logging.getLogger(__name__)


class BackoffStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    FIBONACCI = "fibonacci"


@dataclass(frozen=True)
class RetryConfig:
    """Retry behaviour for one error type.

    Attributes:
        max_attempts: Total invocations allowed, the first one included.
        strategy: Backoff strategy used between attempts.
        base_delay: Base delay in seconds.
        max_delay: Upper bound for any single delay, in seconds.
        timeout: Per-attempt timeout in seconds (None for no limit).
        circuit_breaker_threshold: Failures within the window that open
            the agent's circuit breaker.
    """

    max_attempts: int = 3
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: float = 1.0
    max_delay: float = 16.0
    timeout: float | None = None
    circuit_breaker_threshold: int = 5

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.circuit_breaker_threshold < 1:
            raise ValueError("circuit_breaker_threshold must be >= 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: RetryConfig | None = None) -> RetryConfig:
        """Create from a dictionary, filling gaps from ``base``."""
        base = base or cls()
        timeout = data.get("timeout", base.timeout)
        return cls(
            max_attempts=int(data.get("max_attempts", base.max_attempts)),
            strategy=BackoffStrategy(data.get("strategy", base.strategy.value)),
            base_delay=float(data.get("base_delay", base.base_delay)),
            max_delay=float(data.get("max_delay", base.max_delay)),
            timeout=float(timeout) if timeout else None,
            circuit_breaker_threshold=int(
                data.get("circuit_breaker_threshold", base.circuit_breaker_threshold)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "max_attempts": self.max_attempts,
            "strategy": self.strategy.value,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "circuit_breaker_threshold": self.circuit_breaker_threshold,
        }
        # TOML has no null
        if self.timeout is not None:
            data["timeout"] = self.timeout
        return data


DEFAULT_RETRY_CONFIGS: dict[ErrorType, RetryConfig] = {
    ErrorType.TRANSIENT: RetryConfig(
        max_attempts=5,
        strategy=BackoffStrategy.EXPONENTIAL,
        base_delay=1.0,
        max_delay=16.0,
        timeout=30.0,
        circuit_breaker_threshold=10,
    ),
    ErrorType.RETRIABLE: RetryConfig(
        max_attempts=3,
        strategy=BackoffStrategy.LINEAR,
        base_delay=2.0,
        max_delay=10.0,
        timeout=60.0,
        circuit_breaker_threshold=5,
    ),
    ErrorType.FATAL: RetryConfig(
        max_attempts=0,
        strategy=BackoffStrategy.FIXED,
        base_delay=0.0,
        max_delay=0.0,
        circuit_breaker_threshold=1,
    ),
    ErrorType.CONFLICT: RetryConfig(
        max_attempts=0,
        strategy=BackoffStrategy.FIXED,
        base_delay=0.0,
        max_delay=0.0,
        circuit_breaker_threshold=1,
    ),
}


def fibonacci(n: int) -> int:
    """Return the nth Fibonacci number with fib(1) == fib(2) == 1."""
    a, b = 0, 1
    for _ in range(max(n, 0)):
        a, b = b, a + b
    return a


def compute_delay(
    strategy: BackoffStrategy, attempt: int, base_delay: float, max_delay: float
) -> float:
    """Delay before retry number ``attempt`` (1-based), clamped to ``max_delay``."""
    attempt = max(attempt, 1)
    if strategy == BackoffStrategy.EXPONENTIAL:
        delay = base_delay * (2 ** (attempt - 1))
    elif strategy == BackoffStrategy.LINEAR:
        delay = base_delay * attempt
    elif strategy == BackoffStrategy.FIBONACCI:
        delay = base_delay * fibonacci(attempt)
    else:
        delay = base_delay
    return min(delay, max_delay)


@dataclass
class RetryAttempt:
    """Record of one invocation of a task."""

    number: int
    timestamp: datetime
    delay: float = 0.0
    error: str | None = None
    category: str | None = None
    success: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "timestamp": self.timestamp.isoformat(),
            "delay": self.delay,
            "error": self.error,
            "category": self.category,
            "success": self.success,
        }


@dataclass
class RetryHistory:
    """All attempts made for one task identity."""

    task_id: str
    attempts: list[RetryAttempt] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    @property
    def failures(self) -> int:
        return sum(1 for a in self.attempts if not a.success)

    @property
    def final_success(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].success

    @property
    def total_duration(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def last_error(self) -> str | None:
        for attempt in reversed(self.attempts):
            if attempt.error:
                return attempt.error
        return None

    def record(
        self,
        success: bool,
        error: str | None = None,
        category: str | None = None,
        delay: float = 0.0,
    ) -> RetryAttempt:
        attempt = RetryAttempt(
            number=len(self.attempts) + 1,
            timestamp=datetime.now(),
            delay=delay,
            error=error,
            category=category,
            success=success,
        )
        self.attempts.append(attempt)
        if success:
            self.finished_at = attempt.timestamp
        return attempt

    def set_last_delay(self, delay: float) -> None:
        """Store the backoff that followed the most recent attempt."""
        if self.attempts:
            self.attempts[-1].delay = delay

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempts": [a.to_dict() for a in self.attempts],
            "total_attempts": self.total_attempts,
            "final_success": self.final_success,
            "total_duration": self.total_duration,
        }


@dataclass(frozen=True)
class RecoveryDecision:
    """What the dispatcher should do next."""

    action: RecoveryAction
    delay: float = 0.0
    reason: str = ""
    attempt: int = 0

    @property
    def retries(self) -> bool:
        return self.action in (
            RecoveryAction.RETRY,
            RecoveryAction.RETRY_WITH_BACKOFF,
            RecoveryAction.ALTERNATIVE_PATH,
        )


class RecoveryPolicyEngine:
    """Decide retry, backoff, rollback, pause or failure for a classified error."""

    def __init__(self, configs: dict[ErrorType, RetryConfig] | None = None):
        self._configs = dict(DEFAULT_RETRY_CONFIGS)
        if configs:
            self._configs.update(configs)

    def config_for(self, error_type: ErrorType) -> RetryConfig:
        return self._configs[error_type]

    @property
    def configs(self) -> dict[ErrorType, RetryConfig]:
        return dict(self._configs)

    def decide(
        self,
        classification: ErrorClassification,
        history: RetryHistory,
        config: RetryConfig | None = None,
    ) -> RecoveryDecision:
        """Decide the next action after the latest failed attempt.

        Args:
            classification: Classification of the latest failure.
            history: Attempts so far, the failed one included.
            config: Retry config; defaults to the one for the error type.

        Returns:
            RecoveryDecision with the action and the delay (seconds) to wait
            before acting.
        """
        config = config or self.config_for(classification.type)
        failures = history.failures

        if classification.type == ErrorType.CONFLICT:
            return RecoveryDecision(
                RecoveryAction.PAUSE_WORKFLOW,
                reason=f"Conflict requires human resolution: {classification.category.value}",
                attempt=failures,
            )

        if classification.type == ErrorType.FATAL:
            action = (
                RecoveryAction.CIRCUIT_BREAK
                if classification.recovery_action == RecoveryAction.CIRCUIT_BREAK
                else RecoveryAction.FAIL_IMMEDIATELY
            )
            return RecoveryDecision(
                action,
                reason=f"Fatal error: {classification.category.value}",
                attempt=failures,
            )

        if failures >= config.max_attempts:
            logger.debug("Task %s exhausted %d attempt(s)", history.task_id, failures)
            return RecoveryDecision(
                RecoveryAction.FAIL_IMMEDIATELY,
                reason=(
                    f"Retries exhausted after {failures} attempt(s) "
                    f"({classification.category.value})"
                ),
                attempt=failures,
            )

        if classification.recovery_action == RecoveryAction.ROLLBACK:
            return RecoveryDecision(
                RecoveryAction.ROLLBACK,
                reason=f"Rollback requested: {classification.category.value}",
                attempt=failures,
            )

        delay = compute_delay(config.strategy, failures, config.base_delay, config.max_delay)
        if classification.recovery_action == RecoveryAction.ALTERNATIVE_PATH:
            action = RecoveryAction.ALTERNATIVE_PATH
        elif delay > 0:
            action = RecoveryAction.RETRY_WITH_BACKOFF
        else:
            action = RecoveryAction.RETRY
        return RecoveryDecision(
            action,
            delay=delay,
            reason=f"Retry {failures} of {config.max_attempts - 1} ({config.strategy.value})",
            attempt=failures,
        )
