"""Execution ledger for conductor.

Records one row per task attempt-group (duration, status, retry count,
error type) for downstream analytics.
"""

from .ledger import DEFAULT_LEDGER_PATH, ExecutionLedger
from .models import AgentSummary, ExecutionRecord, ExecutionStatus, LedgerFilter

__all__ = [
    "DEFAULT_LEDGER_PATH",
    "ExecutionLedger",
    "AgentSummary",
    "ExecutionRecord",
    "ExecutionStatus",
    "LedgerFilter",
]
