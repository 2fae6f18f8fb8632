"""Tests for error handling utilities."""

from __future__ import annotations

import io

import pytest
from rich.console import Console

from conductor.errors import (
    AgentNotRegisteredError,
    CheckpointNotFoundError,
    ConfigError,
    LedgerError,
    PhaseNotFoundError,
    PlanError,
)
from conductor.state import ConflictReport, PauseRecord
from conductor.utils.errors import (
    ErrorCategory,
    ErrorInfo,
    error_from_exception,
    format_conflict,
    format_error,
    is_debug_mode,
    set_debug_mode,
)


def render(func, *args) -> str:
    buffer = io.StringIO()
    func(*args, Console(file=buffer, width=200, no_color=True))
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def _debug_off():
    previous = is_debug_mode()
    set_debug_mode(False)
    yield
    set_debug_mode(previous)


class TestExceptions:
    def test_hierarchy(self):
        assert issubclass(PlanError, ValueError)
        assert issubclass(PhaseNotFoundError, LookupError)
        assert issubclass(AgentNotRegisteredError, LookupError)

    def test_messages(self):
        assert str(PhaseNotFoundError(4)) == "Phase 4 does not exist"
        assert str(CheckpointNotFoundError("checkpoint-9")) == "Checkpoint 'checkpoint-9' not found"
        assert str(CheckpointNotFoundError(None)) == "No checkpoint available"
        assert str(AgentNotRegisteredError(["b", "a"])) == "No agent registered for: a, b"


class TestErrorFromException:
    @pytest.mark.parametrize(
        "exception, category",
        [
            (PlanError("bad"), ErrorCategory.PLAN),
            (ConfigError("bad"), ErrorCategory.CONFIG),
            (CheckpointNotFoundError("x"), ErrorCategory.CHECKPOINT),
            (LedgerError("bad"), ErrorCategory.LEDGER),
            (AgentNotRegisteredError(["a"]), ErrorCategory.AGENT),
            (PhaseNotFoundError(2), ErrorCategory.WORKFLOW),
            (FileNotFoundError(2, "missing", "plan.yaml"), ErrorCategory.FILE),
            (PermissionError("denied"), ErrorCategory.FILE),
            (RuntimeError("boom"), ErrorCategory.INTERNAL),
        ],
    )
    def test_categories(self, exception, category):
        info = error_from_exception(exception)
        assert info.category == category
        assert info.suggestion

    def test_plan_error_message(self):
        info = error_from_exception(PlanError("Phase 1 has unknown prerequisite 3"))
        assert info.message == "Invalid plan: Phase 1 has unknown prerequisite 3"

    def test_internal_includes_context(self):
        info = error_from_exception(RuntimeError("boom"), "running plan")
        assert info.message == "Unexpected error during running plan: boom"

    def test_file_not_found_uses_filename(self):
        info = error_from_exception(FileNotFoundError(2, "missing", "plan.yaml"))
        assert info.message == "File not found: plan.yaml"


class TestFormatError:
    def test_message_and_suggestion(self):
        output = render(
            format_error,
            ErrorInfo(message="Broken", category=ErrorCategory.CONFIG, suggestion="Fix it"),
        )
        assert "Error: Broken" in output
        assert "Suggestion: Fix it" in output
        assert "--debug" not in output

    def test_debug_hint_when_exception_hidden(self):
        info = error_from_exception(RuntimeError("boom"))
        output = render(format_error, info)
        assert "use --debug for more details" in output
        assert "Traceback" not in output

    def test_stack_trace_in_debug_mode(self):
        set_debug_mode(True)
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            info = error_from_exception(e)
        output = render(format_error, info)
        assert "Stack trace (debug mode)" in output
        assert "RuntimeError: boom" in output

    def test_long_details_hidden_outside_debug(self):
        info = ErrorInfo(message="m", category=ErrorCategory.INTERNAL, details="x" * 300)
        assert "xxxx" not in render(format_error, info)
        set_debug_mode(True)
        assert "xxxx" in render(format_error, info)


class TestFormatConflict:
    def test_lists_every_conflict(self):
        pause = PauseRecord(
            phase=2,
            reason="2 conflict(s) need review",
            action_url="https://ops.example.com/conflicts",
            conflicts=[
                ConflictReport(
                    task_id="2-scan-scanner-1",
                    agent_type="scanner",
                    phase=2,
                    milestone="scan",
                    conflict_type="security_vulnerability",
                    severity="critical",
                    message="SQL injection",
                    affected_items=["app/db.py"],
                    recommended_actions=["Use parameterized queries"],
                ),
                ConflictReport(
                    task_id="2-scan-auditor-2",
                    agent_type="auditor",
                    phase=2,
                    milestone="scan",
                    conflict_type="compliance_violation",
                    severity="high",
                    message="Missing audit log",
                ),
            ],
        )
        output = render(format_conflict, pause)
        assert "Phase 2 paused: 2 conflict(s) need review" in output
        assert "Action: https://ops.example.com/conflicts" in output
        assert "CRITICAL security_vulnerability from scanner (2-scan-scanner-1)" in output
        assert "HIGH compliance_violation from auditor" in output
        assert "Affected: app/db.py" in output
        assert "- Use parameterized queries" in output
