"""SQLite execution ledger.

Every task attempt-group is appended as one row. The ledger is append-only:
there is no update or delete API, and triggers reject UPDATE/DELETE on the
table so a record is frozen once written.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import LedgerError
from .models import AgentSummary, ExecutionRecord, ExecutionStatus, LedgerFilter

logger = logging.getLogger(__name__)

# Default database location
DEFAULT_LEDGER_PATH = Path(".conductor/ledger.db")

_FAILURE_STATUSES = (
    ExecutionStatus.FAILED,
    ExecutionStatus.TIMEOUT,
    ExecutionStatus.CONFLICT,
    ExecutionStatus.CANCELLED,
)


class ExecutionLedger:
    """Append-only store of execution records.

    A single connection is shared by all threads and guarded by a lock, which
    also makes ``":memory:"`` databases usable from worker threads.

    Attributes:
        db_path: Path to the SQLite database file, or ``":memory:"``.
    """

    def __init__(self, db_path: Path | str = DEFAULT_LEDGER_PATH):
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0,
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a database cursor with automatic commit/rollback."""
        with self._lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _init_db(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS execution_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    goal TEXT NOT NULL DEFAULT '',
                    agent_type TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    task_description TEXT NOT NULL DEFAULT '',
                    phase INTEGER,
                    milestone TEXT,
                    status TEXT NOT NULL CHECK (status IN
                        ('success', 'failed', 'retried', 'conflict', 'timeout', 'cancelled')),
                    started_at TEXT NOT NULL,
                    completed_at TEXT NOT NULL,
                    estimated_duration REAL,
                    actual_duration REAL NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    error_type TEXT,
                    error_category TEXT,
                    error_message TEXT,
                    cpu_usage REAL,
                    memory_usage REAL,
                    context TEXT DEFAULT '{}'
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_records_agent
                ON execution_records(agent_type)
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_records_completed
                ON execution_records(completed_at DESC)
                """
            )
            cursor.execute(
                """
                CREATE TRIGGER IF NOT EXISTS execution_records_no_update
                BEFORE UPDATE ON execution_records
                BEGIN
                    SELECT RAISE(ABORT, 'execution records are append-only');
                END
                """
            )
            cursor.execute(
                """
                CREATE TRIGGER IF NOT EXISTS execution_records_no_delete
                BEFORE DELETE ON execution_records
                BEGIN
                    SELECT RAISE(ABORT, 'execution records are append-only');
                END
                """
            )

    def append(self, record: ExecutionRecord) -> int:
        """Append a finished record and return its row id.

        Raises:
            LedgerError: If the record has no ``completed_at`` or already
                carries an id.
        """
        if record.completed_at is None:
            raise LedgerError(f"Record for task {record.task_id} has no completed_at")
        if record.id is not None:
            raise LedgerError(f"Record {record.id} was already appended")

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO execution_records (
                    goal, agent_type, task_id, task_description, phase, milestone,
                    status, started_at, completed_at, estimated_duration,
                    actual_duration, retry_count, error_type, error_category,
                    error_message, cpu_usage, memory_usage, context
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.goal,
                    record.agent_type,
                    record.task_id,
                    record.task_description,
                    record.phase,
                    record.milestone,
                    record.status.value,
                    record.started_at.isoformat(),
                    record.completed_at.isoformat(),
                    record.estimated_duration,
                    record.actual_duration,
                    record.retry_count,
                    record.error_type,
                    record.error_category,
                    record.error_message,
                    record.cpu_usage,
                    record.memory_usage,
                    json.dumps(record.context, default=str),
                ),
            )
            row_id = cursor.lastrowid or 0
        logger.debug("Ledger #%d: %s %s", row_id, record.task_id, record.status.value)
        return row_id

    def get(self, record_id: int) -> ExecutionRecord | None:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM execution_records WHERE id = ?", (record_id,))
            row = cursor.fetchone()
        return ExecutionRecord.from_row(row) if row else None

    def records(self, filter: LedgerFilter | None = None) -> list[ExecutionRecord]:
        """Query records, newest first."""
        filter = filter or LedgerFilter()
        conditions = []
        params: list[object] = []

        if filter.agent_type:
            conditions.append("agent_type = ?")
            params.append(filter.agent_type)
        if filter.phase is not None:
            conditions.append("phase = ?")
            params.append(filter.phase)
        if filter.statuses:
            placeholders = ", ".join("?" for _ in filter.statuses)
            conditions.append(f"status IN ({placeholders})")
            params.extend(s.value for s in filter.statuses)
        if filter.since:
            conditions.append("completed_at >= ?")
            params.append(filter.since.isoformat())

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(filter.limit)
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM execution_records {where} ORDER BY id DESC LIMIT ?",
                params,
            )
            rows = cursor.fetchall()
        return [ExecutionRecord.from_row(row) for row in rows]

    def count(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM execution_records")
            return int(cursor.fetchone()[0])

    def agent_summaries(self) -> list[AgentSummary]:
        """Per-agent totals, success counts and average duration."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT agent_type,
                       COUNT(*) AS total,
                       SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS succeeded,
                       SUM(CASE WHEN status IN ('failed', 'timeout', 'cancelled')
                                THEN 1 ELSE 0 END) AS failed,
                       SUM(CASE WHEN status = 'conflict' THEN 1 ELSE 0 END) AS conflicts,
                       SUM(retry_count) AS total_retries,
                       AVG(actual_duration) AS average_duration
                FROM execution_records
                GROUP BY agent_type
                ORDER BY agent_type
                """
            )
            rows = cursor.fetchall()
        return [
            AgentSummary(
                agent_type=row["agent_type"],
                total=row["total"],
                succeeded=row["succeeded"] or 0,
                failed=row["failed"] or 0,
                conflicts=row["conflicts"] or 0,
                total_retries=row["total_retries"] or 0,
                average_duration=round(row["average_duration"] or 0.0, 3),
            )
            for row in rows
        ]

    def recent_failures(self, limit: int = 5) -> list[ExecutionRecord]:
        return self.records(LedgerFilter(statuses=list(_FAILURE_STATUSES), limit=limit))

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
