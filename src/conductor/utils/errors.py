"""Error display helpers for the conductor CLI.

Provides consistent error formatting with:
- Human-friendly messages
- Suggested fixes
- Hidden stack traces (unless debug mode)
"""

from __future__ import annotations

import os
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import (
    AgentNotRegisteredError,
    CheckpointNotFoundError,
    ConfigError,
    LedgerError,
    PhaseNotFoundError,
    PlanError,
)

if TYPE_CHECKING:
    from rich.console import Console

    from ..state import PauseRecord

# Debug mode enabled by CONDUCTOR_DEBUG=1 or the --debug flag
_debug_mode = os.environ.get("CONDUCTOR_DEBUG", "0") == "1"

SEVERITY_STYLES = {
    "low": "dim",
    "medium": "yellow",
    "high": "red",
    "critical": "bold red",
}


class ErrorCategory(str, Enum):
    """Categories of operator-facing errors."""

    CONFIG = "config"
    PLAN = "plan"
    CHECKPOINT = "checkpoint"
    LEDGER = "ledger"
    AGENT = "agent"
    FILE = "file"
    WORKFLOW = "workflow"
    INTERNAL = "internal"


@dataclass
class ErrorInfo:
    """Structured error information for consistent display."""

    message: str
    category: ErrorCategory
    suggestion: str | None = None
    details: str | None = None
    original_error: Exception | None = None


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error output."""
    global _debug_mode
    _debug_mode = enabled


def is_debug_mode() -> bool:
    return _debug_mode


def format_error(error: ErrorInfo, console: Console) -> None:
    """Print an error with consistent styling."""
    console.print(f"[bold red]Error:[/bold red] {error.message}")

    if error.details and (_debug_mode or len(error.details) < 200):
        console.print(f"[dim]{error.details}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")

    if _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{line.rstrip()}[/dim]")

    if not _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Set CONDUCTOR_DEBUG=1 or use --debug for more details[/dim]")


def error_from_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Map an exception to an ErrorInfo with a suggestion."""
    if isinstance(exception, PlanError):
        return ErrorInfo(
            message=f"Invalid plan: {exception}",
            category=ErrorCategory.PLAN,
            suggestion="Run 'conductor plan validate <path>' to list every problem",
            original_error=exception,
        )
    if isinstance(exception, ConfigError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.CONFIG,
            suggestion="Run 'conductor config show' to view the effective configuration",
            original_error=exception,
        )
    if isinstance(exception, CheckpointNotFoundError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.CHECKPOINT,
            suggestion="Run 'conductor checkpoints list' to see available checkpoints",
        )
    if isinstance(exception, LedgerError):
        return ErrorInfo(
            message=f"Ledger error: {exception}",
            category=ErrorCategory.LEDGER,
            original_error=exception,
        )
    if isinstance(exception, AgentNotRegisteredError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.AGENT,
            suggestion="Add a 'factory: module:attr' entry for each agent in the plan",
        )
    if isinstance(exception, PhaseNotFoundError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.WORKFLOW,
            suggestion="Run 'conductor plan show <path>' to list phase ordinals",
        )
    if isinstance(exception, FileNotFoundError):
        return ErrorInfo(
            message=f"File not found: {exception.filename or exception}",
            category=ErrorCategory.FILE,
            suggestion="Check the path and ensure the file exists",
            original_error=exception,
        )
    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            category=ErrorCategory.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )
    return ErrorInfo(
        message=f"Unexpected error during {context}: {exception}",
        category=ErrorCategory.INTERNAL,
        suggestion="This may be a bug; rerun with --debug for a stack trace",
        original_error=exception,
    )


def format_conflict(pause: PauseRecord, console: Console) -> None:
    """Print the conflicts that paused a phase."""
    console.print(
        f"[bold yellow]Phase {pause.phase} paused:[/bold yellow] {pause.reason}"
    )
    if pause.action_url:
        console.print(f"[dim]Action: {pause.action_url}[/dim]")
    for report in pause.conflicts:
        style = SEVERITY_STYLES.get(report.severity, "white")
        console.print()
        console.print(
            f"  [{style}]{report.severity.upper()}[/{style}] "
            f"{report.conflict_type} from {report.agent_type} ({report.task_id})"
        )
        console.print(f"  {report.message}")
        if report.affected_items:
            console.print(f"  [dim]Affected:[/dim] {', '.join(report.affected_items)}")
        for action in report.recommended_actions:
            console.print(f"    - {action}")
