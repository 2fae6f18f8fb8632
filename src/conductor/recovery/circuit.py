"""Per-agent circuit breaker.

Each agent id gets its own ``CircuitBreakerState`` the first time it is seen.
Retry-eligible failures are counted in a sliding window; reaching the
threshold opens the breaker for ``cooldown`` seconds. Once the cool-down has
elapsed the breaker is half-open and admits exactly one probe: a successful
probe closes it, a failed probe reopens it and restarts the cool-down. A
probe abandoned with no verdict is released the same way, without counting
as a trip.

States are never removed from the registry, only reset.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerState:
    """Breaker state for one agent. Times come from the breaker's clock."""

    agent_id: str
    threshold: int
    window: float
    cooldown: float
    failures: deque[float] = field(default_factory=deque)
    is_open: bool = False
    last_failure_at: float | None = None
    opened_at: float | None = None
    reset_at: float | None = None
    probe_in_flight: bool = False
    probe_owner: str | None = None
    trips: int = 0

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def half_open(self) -> bool:
        return self.is_open and self.probe_in_flight

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "threshold": self.threshold,
            "window": self.window,
            "cooldown": self.cooldown,
            "last_failure_at": self.last_failure_at,
            "opened_at": self.opened_at,
            "reset_at": self.reset_at,
            "half_open": self.half_open,
            "trips": self.trips,
        }


class CircuitBreaker:
    """Registry of circuit breaker states keyed by agent id.

    Args:
        threshold: Default failure count that opens a breaker.
        window: Sliding window length in seconds.
        cooldown: Seconds a breaker stays open before admitting a probe.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        threshold: int = 5,
        window: float = 60.0,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.window = window
        self.cooldown = cooldown
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    def _state(self, agent_id: str) -> CircuitBreakerState:
        state = self._states.get(agent_id)
        if state is None:
            state = CircuitBreakerState(
                agent_id=agent_id,
                threshold=self.threshold,
                window=self.window,
                cooldown=self.cooldown,
            )
            self._states[agent_id] = state
        return state

    def _prune(self, state: CircuitBreakerState, now: float) -> None:
        while state.failures and now - state.failures[0] > state.window:
            state.failures.popleft()

    def _open(self, state: CircuitBreakerState, now: float) -> None:
        state.is_open = True
        state.opened_at = now
        state.reset_at = now + state.cooldown
        state.probe_in_flight = False
        state.probe_owner = None
        state.trips += 1

    def state(self, agent_id: str) -> CircuitBreakerState:
        with self._lock:
            return self._state(agent_id)

    def is_open(self, agent_id: str) -> bool:
        """Whether a dispatch would be rejected right now. Does not consume the probe."""
        with self._lock:
            state = self._state(agent_id)
            if not state.is_open:
                return False
            if state.probe_in_flight:
                return True
            return self._clock() < (state.reset_at or 0.0)

    def allow(self, agent_id: str, owner: str | None = None) -> bool:
        """Admit a dispatch, consuming the half-open probe slot if applicable.

        ``owner`` identifies the probe holder so ``release_probe`` can tell
        whose probe it is giving back.
        """
        with self._lock:
            state = self._state(agent_id)
            if not state.is_open:
                return True
            if state.probe_in_flight or self._clock() < (state.reset_at or 0.0):
                return False
            state.probe_in_flight = True
            state.probe_owner = owner
            logger.info("Circuit for %s half-open, admitting probe", agent_id)
            return True

    def record_failure(
        self, agent_id: str, threshold: int | None = None, counted: bool = True
    ) -> bool:
        """Record a failed invocation.

        Args:
            agent_id: Agent that failed.
            threshold: Threshold override for this agent.
            counted: Whether the failure counts toward the window. A failed
                half-open probe always reopens the breaker.

        Returns:
            True if this failure opened (or reopened) the breaker.
        """
        with self._lock:
            state = self._state(agent_id)
            now = self._clock()
            state.last_failure_at = now
            if threshold is not None:
                state.threshold = threshold

            if state.probe_in_flight:
                self._open(state, now)
                logger.warning("Probe for %s failed, circuit reopened", agent_id)
                return True

            if not counted:
                return False

            state.failures.append(now)
            self._prune(state, now)
            if not state.is_open and state.failure_count >= state.threshold:
                self._open(state, now)
                logger.warning(
                    "Circuit opened for %s after %d failure(s) in %.0fs",
                    agent_id,
                    state.failure_count,
                    state.window,
                )
                return True
            return False

    def record_success(self, agent_id: str) -> None:
        with self._lock:
            state = self._state(agent_id)
            if state.probe_in_flight:
                logger.info("Probe for %s succeeded, circuit closed", agent_id)
                self._close(state)

    def release_probe(self, agent_id: str, owner: str | None = None) -> bool:
        """Give back a probe that ended with no verdict, e.g. abandoned on cancel.

        The breaker stays open and the cool-down restarts. Returns False when
        no probe is in flight or it belongs to a different owner.
        """
        with self._lock:
            state = self._state(agent_id)
            if not state.probe_in_flight:
                return False
            if owner is not None and state.probe_owner not in (None, owner):
                return False
            now = self._clock()
            state.probe_in_flight = False
            state.probe_owner = None
            state.opened_at = now
            state.reset_at = now + state.cooldown
            logger.warning("Probe for %s abandoned, circuit stays open", agent_id)
            return True

    def trip(self, agent_id: str, reason: str = "") -> None:
        """Open the breaker immediately regardless of the failure count."""
        with self._lock:
            state = self._state(agent_id)
            self._open(state, self._clock())
            logger.warning("Circuit tripped for %s: %s", agent_id, reason or "manual")

    def reset(self, agent_id: str | None = None) -> None:
        """Close one breaker (or all) and clear failure counts."""
        with self._lock:
            targets = [self._state(agent_id)] if agent_id else list(self._states.values())
            for state in targets:
                self._close(state)

    def _close(self, state: CircuitBreakerState) -> None:
        state.is_open = False
        state.probe_in_flight = False
        state.probe_owner = None
        state.failures.clear()
        state.opened_at = None
        state.reset_at = None

    def open_agents(self) -> list[str]:
        with self._lock:
            return sorted(a for a, s in self._states.items() if s.is_open)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {agent: state.to_dict() for agent, state in self._states.items()}
