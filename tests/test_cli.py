"""Tests for the conductor CLI."""

from __future__ import annotations

import json
import logging
import threading
from textwrap import dedent

import pytest
from click.testing import CliRunner

from conductor import __version__
from conductor import cli
from conductor.agent.base import Agent
from conductor.agent.models import AgentTask, AgentTaskResult
from conductor.cli import EXIT_BLOCKED, EXIT_FAILED, main
from conductor.observability.ledger import ExecutionLedger


class ConflictOnceAgent(Agent):
    """Reports a security conflict on its first call, then succeeds."""

    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def perform_task(self, task: AgentTask) -> AgentTaskResult:
        with self._lock:
            self.calls += 1
            first = self.calls == 1
        if first:
            return AgentTaskResult.fail("security vulnerability found in login form")
        return AgentTaskResult.ok("clean")


CONFLICT_PLAN = dedent(
    """
    name: scan
    agents:
      scanner:
        factory: test_cli:ConflictOnceAgent
    phases:
      - ordinal: 1
        name: Scan
        milestones:
          - id: scan
            agents: [scanner]
    """
)


@pytest.fixture
def runner(monkeypatch):
    # rich wraps at 80 columns under CliRunner; use a wide console for assertions.
    monkeypatch.setattr(cli.console, "_width", 200)
    return CliRunner()


@pytest.fixture(autouse=True)
def _restore_logging(monkeypatch, tmp_path):
    """The CLI reconfigures the conductor logger; put it back afterwards."""
    logger = logging.getLogger("conductor")
    handlers, level = list(logger.handlers), logger.level
    monkeypatch.setenv("CONDUCTOR_LEDGER_PATH", str(tmp_path / "ledger.db"))
    monkeypatch.setenv("CONDUCTOR_LOG_LEVEL", "error")
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def conflict_plan(tmp_path):
    path = tmp_path / "scan.yaml"
    path.write_text(CONFLICT_PLAN)
    return path


# =============================================================================
# Top-level
# =============================================================================


class TestMain:
    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_without_command(self, runner):
        result = runner.invoke(main, [])
        assert result.exit_code == 0
        assert "phased multi-agent orchestration" in result.output

    def test_invalid_config_file(self, runner, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[logging]\nlevel = 'loud'\n")
        result = runner.invoke(main, ["--config", str(path), "config", "show"])
        assert result.exit_code == EXIT_FAILED
        assert "Invalid log level" in result.output


# =============================================================================
# Plan commands
# =============================================================================


class TestPlanCommands:
    def test_validate_ok(self, runner, conflict_plan):
        result = runner.invoke(main, ["plan", "validate", str(conflict_plan)])
        assert result.exit_code == 0
        assert "1 phase(s)" in result.output

    def test_validate_lists_problems(self, runner, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text(
            dedent(
                """
                name: broken
                phases:
                  - ordinal: 1
                    prerequisites: [7]
                    milestones:
                      - id: a
                        agents: [x]
                      - id: a
                        agents: [y]
                """
            )
        )
        result = runner.invoke(main, ["plan", "validate", str(path)])
        assert result.exit_code == EXIT_FAILED
        assert "is invalid" in result.output
        assert "unknown prerequisite 7" in result.output
        assert "duplicate milestones" in result.output

    def test_show_builtin(self, runner):
        result = runner.invoke(main, ["plan", "show"])
        assert result.exit_code == 0
        assert "Foundation" in result.output

    def test_show_yaml(self, runner, conflict_plan):
        result = runner.invoke(main, ["plan", "show", str(conflict_plan), "--yaml"])
        assert result.exit_code == 0
        assert "name: scan" in result.output

    def test_show_unknown_builtin(self, runner):
        result = runner.invoke(main, ["plan", "show", "--builtin", "nope"])
        assert result.exit_code == EXIT_FAILED
        assert "Plan file not found" in result.output


# =============================================================================
# Run
# =============================================================================


class TestRun:
    def test_builtin_plan_completes(self, runner, tmp_path):
        result = runner.invoke(main, ["run", "--goal", "dry run"])
        assert result.exit_code == 0, result.output
        assert "Run summary" in result.output

        ledger = ExecutionLedger(tmp_path / "ledger.db")
        try:
            records = ledger.records()
        finally:
            ledger.close()
        assert records
        assert {r.goal for r in records} == {"dry run"}

    def test_json_status(self, runner):
        result = runner.invoke(main, ["run", "--json"])
        assert result.exit_code == 0
        status = json.loads(result.stdout)
        assert set(status["phase_statuses"].values()) == {"completed"}
        assert status["progress"] == 100.0

    def test_blocked_without_interaction(self, runner, conflict_plan):
        result = runner.invoke(main, ["run", str(conflict_plan), "--no-interactive"])
        assert result.exit_code == EXIT_BLOCKED
        assert "security_vulnerability" in result.output

    def test_interactive_resume(self, runner, conflict_plan):
        result = runner.invoke(main, ["run", str(conflict_plan)], input="patched\nn\n")
        assert result.exit_code == 0, result.output
        assert "Resolution note" in result.output
        assert "Phase 1 resumed" in result.output

    def test_interactive_accept(self, runner, conflict_plan):
        result = runner.invoke(main, ["run", str(conflict_plan)], input="accepted\ny\n")
        assert result.exit_code == 0, result.output

    def test_missing_agent(self, runner, tmp_path):
        path = tmp_path / "plan.yaml"
        path.write_text(
            "name: p\nphases:\n  - ordinal: 1\n    milestones:\n"
            "      - id: m\n        agents: [ghost]\n"
        )
        result = runner.invoke(main, ["run", str(path)])
        assert result.exit_code == EXIT_FAILED
        assert "No agent registered for: ghost" in result.output


# =============================================================================
# Checkpoints and ledger
# =============================================================================


class TestInspection:
    def test_checkpoints_without_directory(self, runner):
        result = runner.invoke(main, ["checkpoints", "list"])
        assert result.exit_code == 0
        assert "No checkpoint directory configured" in result.output

    def test_checkpoints_after_run(self, runner, tmp_path, monkeypatch):
        directory = tmp_path / "checkpoints"
        monkeypatch.setenv("CONDUCTOR_CHECKPOINT_DIR", str(directory))
        assert runner.invoke(main, ["run"]).exit_code == 0
        assert list(directory.glob("*.json"))

        result = runner.invoke(main, ["checkpoints", "list", "--dir", str(directory)])
        assert result.exit_code == 0
        assert "No checkpoints" not in result.output

    def test_checkpoints_empty_directory(self, runner, tmp_path):
        result = runner.invoke(main, ["checkpoints", "list", "--dir", str(tmp_path)])
        assert "No checkpoints in" in result.output

    def test_ledger_missing(self, runner, tmp_path):
        result = runner.invoke(main, ["ledger", "stats", "--db", str(tmp_path / "none.db")])
        assert result.exit_code == 0
        assert "No ledger at" in result.output

    def test_ledger_stats_after_run(self, runner, tmp_path):
        assert runner.invoke(main, ["run"]).exit_code == 0
        result = runner.invoke(main, ["ledger", "stats"])
        assert result.exit_code == 0
        assert "architect" in result.output


# =============================================================================
# Config commands
# =============================================================================


class TestConfigCommands:
    def test_show_json(self, runner):
        result = runner.invoke(main, ["config", "show", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["dispatch"]["max_workers"] == 8
        assert data["logging"]["level"] == "error"

    def test_show_section(self, runner):
        result = runner.invoke(main, ["config", "show", "--section", "circuit", "--json"])
        assert json.loads(result.stdout) == {
            "circuit": {"threshold": 5, "window": 60.0, "cooldown": 30.0}
        }

    def test_show_unknown_section(self, runner):
        result = runner.invoke(main, ["config", "show", "--section", "nope"])
        assert result.exit_code == EXIT_FAILED

    def test_show_text(self, runner):
        result = runner.invoke(main, ["config", "show"])
        assert result.exit_code == 0
        assert "[recovery.retry.transient]" in result.output

    def test_init(self, runner, tmp_path):
        target = tmp_path / "conductor.toml"
        assert runner.invoke(main, ["config", "init", "--path", str(target)]).exit_code == 0
        assert target.exists()

        again = runner.invoke(main, ["config", "init", "--path", str(target)])
        assert again.exit_code == EXIT_FAILED
        assert "already exists" in again.output

        forced = runner.invoke(main, ["config", "init", "--path", str(target), "--force"])
        assert forced.exit_code == 0
