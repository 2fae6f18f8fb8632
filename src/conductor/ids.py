"""Process-scoped id and sequence generation.

Counters live on an explicit ``IdSequence`` object that is created once per
orchestrator and handed to the components that mint ids (the scheduler for
task ids, the checkpoint store for checkpoint ids). Nothing reads a module
level counter, so two orchestrators in one process never share a sequence.

Example:
    ids = IdSequence()
    ids.next("checkpoint")      # "checkpoint-1"
    ids.next("checkpoint")      # "checkpoint-2"
    ids.next_int("task-order")  # 1
    ids.reset()
"""

from __future__ import annotations

import threading


class IdSequence:
    """Thread-safe named counters.

    Each prefix owns an independent counter starting at ``start``. ``reset``
    returns every counter (or one prefix) to its initial value and is meant
    for tests and for a fresh orchestrator run in the same process.
    """

    def __init__(self, start: int = 1):
        if start < 0:
            raise ValueError("start must be >= 0")
        self._start = start
        self._counters: dict[str, int] = {}
        self._lock = threading.Lock()

    def next_int(self, name: str) -> int:
        """Advance the counter for ``name`` and return its new value."""
        with self._lock:
            value = self._counters.get(name, self._start - 1) + 1
            self._counters[name] = value
            return value

    def next(self, prefix: str) -> str:
        """Return the next id for ``prefix`` formatted as ``prefix-N``."""
        return f"{prefix}-{self.next_int(prefix)}"

    def peek(self, name: str) -> int:
        """Return the last value issued for ``name`` (``start - 1`` if none)."""
        with self._lock:
            return self._counters.get(name, self._start - 1)

    def reset(self, name: str | None = None) -> None:
        with self._lock:
            if name is None:
                self._counters.clear()
            else:
                self._counters.pop(name, None)
