"""Lifecycle events broadcast to external subscribers.

Event names are part of the public contract. Each emitted event gets a
monotonically increasing sequence number and subscribers see events in
emission order. A subscriber that raises is logged and skipped; it never
breaks the orchestrator.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TASK_STARTED = "agent.task_started"
    TASK_COMPLETED = "agent.task_completed"
    TASK_FAILED = "agent.task_failed"
    CONFLICT_DETECTED = "agent.conflict_detected"
    PAUSED = "agent.paused"
    RESUMED = "agent.resumed"
    CIRCUIT_OPENED = "agent.circuit_opened"
    PHASE_STARTED = "phase.started"
    PHASE_ADVANCED = "phase.advanced"
    PHASE_BLOCKED = "phase.blocked"
    PHASE_FAILED = "phase.failed"
    CHECKPOINT_RESTORED = "checkpoint.restored"


@dataclass(frozen=True)
class Event:
    sequence: int
    type: EventType
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


EventCallback = Callable[[Event], None]


class EventBus:
    """Ordered, in-process event fan-out with a bounded history."""

    def __init__(self, history_limit: int = 1000):
        self._callbacks: list[EventCallback] = []
        self._history: deque[Event] = deque(maxlen=history_limit)
        self._sequence = 0
        # Reentrant so a subscriber may emit
        self._lock = threading.RLock()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it."""
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event_type: EventType, **payload: Any) -> Event:
        with self._lock:
            self._sequence += 1
            event = Event(self._sequence, event_type, datetime.now(), payload)
            self._history.append(event)
            logger.debug("Event #%d %s %s", event.sequence, event_type.value, payload)
            for cb in list(self._callbacks):
                try:
                    cb(event)
                except Exception:
                    logger.exception("Event subscriber failed on %s", event_type.value)
            return event

    def history(self, event_type: EventType | None = None) -> list[Event]:
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return events

    def count(self, event_type: EventType) -> int:
        return len(self.history(event_type))
