"""Checkpoint store for rollback-class recovery.

A checkpoint freezes the orchestrator state as serialized JSON at capture
time, so later changes to the live state can never leak into it. Restoring
parses the JSON into a brand new ``OrchestratorState``; the scheduler swaps
it in under its state lock.

Checkpoints can optionally be written to a directory, one JSON file per
checkpoint named ``<timestamp>-<checkpoint_id>.json``, and loaded back later.
Ids restart with every run, so the timestamp keeps files from different runs
sharing a directory apart.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..errors import CheckpointNotFoundError
from ..ids import IdSequence
from ..state import OrchestratorState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointMetadata:
    description: str = ""
    automatic: bool = True
    triggered_by: str = "scheduler"

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "automatic": self.automatic,
            "triggered_by": self.triggered_by,
        }


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of orchestrator state."""

    checkpoint_id: str
    timestamp: datetime
    phase: int | None
    state_json: str
    agent_states_json: str = "{}"
    metadata: CheckpointMetadata = field(default_factory=CheckpointMetadata)

    @property
    def key(self) -> str:
        """Unique across runs: capture time plus id. Also the persisted file stem."""
        return f"{self.timestamp:%Y%m%dT%H%M%S%f}-{self.checkpoint_id}"

    @property
    def state(self) -> OrchestratorState:
        """A fresh copy of the captured state."""
        return OrchestratorState.model_validate_json(self.state_json)

    @property
    def agent_states(self) -> dict[str, Any]:
        result: dict[str, Any] = json.loads(self.agent_states_json)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase,
            "state": json.loads(self.state_json),
            "agent_states": self.agent_states,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        meta = data.get("metadata", {})
        return cls(
            checkpoint_id=data["checkpoint_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            phase=data.get("phase"),
            state_json=json.dumps(data.get("state", {})),
            agent_states_json=json.dumps(data.get("agent_states", {})),
            metadata=CheckpointMetadata(
                description=meta.get("description", ""),
                automatic=meta.get("automatic", True),
                triggered_by=meta.get("triggered_by", "scheduler"),
            ),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> Checkpoint:
        return cls.from_dict(json.loads(json_str))


class CheckpointStore:
    """In-memory checkpoint store with count/age garbage collection.

    Args:
        ids: Sequence used to mint checkpoint ids.
        max_checkpoints: Oldest checkpoints beyond this count are discarded,
            together with any file this store wrote for them. 0 disables it.
        max_age: Checkpoints older than this many seconds are discarded.
        directory: Where ``persist`` writes checkpoint files (optional).
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        ids: IdSequence | None = None,
        max_checkpoints: int = 10,
        max_age: float | None = None,
        directory: Path | str | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._ids = ids or IdSequence()
        self.max_checkpoints = max_checkpoints
        self.max_age = max_age
        self.directory = Path(directory) if directory else None
        self._clock = clock
        # Keyed by Checkpoint.key; _by_id maps a bare id to its newest key
        self._checkpoints: dict[str, Checkpoint] = {}
        self._by_id: dict[str, str] = {}
        self._persisted: set[str] = set()
        self._written: dict[str, Path] = {}
        self._lock = threading.Lock()

    def capture(
        self,
        phase: int | None,
        state: OrchestratorState,
        agent_states: dict[str, Any] | None = None,
        description: str = "",
        automatic: bool = True,
        triggered_by: str = "scheduler",
    ) -> str:
        """Snapshot ``state`` and return the new checkpoint id."""
        checkpoint = Checkpoint(
            checkpoint_id=self._ids.next("checkpoint"),
            timestamp=self._clock(),
            phase=phase,
            state_json=state.model_dump_json(),
            agent_states_json=json.dumps(agent_states or {}, default=str),
            metadata=CheckpointMetadata(description, automatic, triggered_by),
        )
        with self._lock:
            self._add_locked(checkpoint)
            self._gc_locked()
        logger.debug(
            "Captured %s (phase=%s, %s)", checkpoint.checkpoint_id, phase, description
        )
        return checkpoint.checkpoint_id

    def restore(self, checkpoint_id: str) -> OrchestratorState:
        checkpoint = self.get(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        logger.info("Restoring %s (phase=%s)", checkpoint_id, checkpoint.phase)
        return checkpoint.state

    def get(self, checkpoint_id: str) -> Checkpoint | None:
        """Look up by id (the newest checkpoint with it) or by ``Checkpoint.key``."""
        with self._lock:
            return self._checkpoints.get(self._by_id.get(checkpoint_id, checkpoint_id))

    def list_checkpoints(self, phase: int | None = None) -> list[Checkpoint]:
        """Checkpoints, newest first, optionally for one phase."""
        with self._lock:
            items = list(self._checkpoints.values())
            # Break timestamp ties by insertion order
            order = {key: i for i, key in enumerate(self._checkpoints)}
        if phase is not None:
            items = [c for c in items if c.phase == phase]
        return sorted(items, key=lambda c: (c.timestamp, order.get(c.key, 0)), reverse=True)

    def latest(self, phase: int | None = None) -> Checkpoint | None:
        items = self.list_checkpoints(phase)
        return items[0] if items else None

    def delete(self, checkpoint_id: str) -> bool:
        with self._lock:
            key = self._by_id.get(checkpoint_id, checkpoint_id)
            if key not in self._checkpoints:
                return False
            self._drop_locked(key)
            return True

    def clear(self) -> int:
        with self._lock:
            count = len(self._checkpoints)
            for key in list(self._checkpoints):
                self._drop_locked(key)
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._checkpoints)

    def gc(self) -> int:
        """Drop checkpoints beyond the count limit or older than ``max_age``."""
        with self._lock:
            return self._gc_locked()

    def _add_locked(self, checkpoint: Checkpoint) -> None:
        self._checkpoints[checkpoint.key] = checkpoint
        newest = self._checkpoints.get(self._by_id.get(checkpoint.checkpoint_id, ""))
        if newest is None or newest.timestamp <= checkpoint.timestamp:
            self._by_id[checkpoint.checkpoint_id] = checkpoint.key

    def _drop_locked(self, key: str) -> None:
        """Forget a checkpoint, removing its file if this store wrote it."""
        checkpoint = self._checkpoints.pop(key)
        if self._by_id.get(checkpoint.checkpoint_id) == key:
            del self._by_id[checkpoint.checkpoint_id]
        self._persisted.discard(key)
        path = self._written.pop(key, None)
        if path is not None:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove checkpoint file %s: %s", path, e)

    def _gc_locked(self) -> int:
        removed = 0
        if self.max_age is not None:
            cutoff = self._clock() - timedelta(seconds=self.max_age)
            for key in [k for k, cp in self._checkpoints.items() if cp.timestamp < cutoff]:
                self._drop_locked(key)
                removed += 1
        # dict preserves capture order, so the front holds the oldest
        while self.max_checkpoints > 0 and len(self._checkpoints) > self.max_checkpoints:
            self._drop_locked(next(iter(self._checkpoints)))
            removed += 1
        return removed

    def persist(self) -> list[Path]:
        """Write checkpoints not yet on disk to ``directory``.

        Returns:
            Paths written. Empty when no directory is configured.
        """
        if self.directory is None:
            return []
        self.directory.mkdir(parents=True, exist_ok=True)
        with self._lock:
            pending = [c for key, c in self._checkpoints.items() if key not in self._persisted]
        written = []
        for checkpoint in pending:
            path = self.directory / f"{checkpoint.key}.json"
            path.write_text(checkpoint.to_json())
            with self._lock:
                if checkpoint.key not in self._checkpoints:
                    # Collected while being written
                    path.unlink(missing_ok=True)
                    continue
                self._persisted.add(checkpoint.key)
                self._written[checkpoint.key] = path
            written.append(path)
        if written:
            logger.info("Persisted %d checkpoint(s) to %s", len(written), self.directory)
        return written

    def load_persisted(self) -> int:
        """Load checkpoint files from ``directory`` into memory."""
        if self.directory is None or not self.directory.exists():
            return 0
        loaded = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                loaded.append(Checkpoint.from_json(path.read_text()))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning("Skipping unreadable checkpoint %s: %s", path.name, e)
        loaded.sort(key=lambda c: c.timestamp)
        with self._lock:
            for checkpoint in loaded:
                self._add_locked(checkpoint)
                self._persisted.add(checkpoint.key)
        return len(loaded)
