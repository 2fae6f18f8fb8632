"""Tests for the unified configuration system."""

from __future__ import annotations

import pytest

from conductor.config import (
    CheckpointConfig,
    CircuitConfig,
    ConductorConfig,
    DispatchConfig,
    LoggingConfig,
    RecoveryConfig,
    get_config,
    get_config_path,
    load_config,
    reload_config,
    reset_config,
    save_config,
)
from conductor.errors import ConfigError
from conductor.recovery.classifier import ErrorType
from conductor.recovery.policy import DEFAULT_RETRY_CONFIGS, BackoffStrategy


# =============================================================================
# Section Tests
# =============================================================================


class TestDispatchConfig:
    """Tests for DispatchConfig dataclass."""

    def test_defaults(self):
        config = DispatchConfig()
        assert config.max_workers == 8
        assert config.default_concurrency == 1
        assert config.attempt_timeout == 0.0
        assert config.cancel_grace == 5.0

    def test_from_dict(self):
        config = DispatchConfig.from_dict({"max_workers": 4, "attempt_timeout": "2.5"})
        assert config.max_workers == 4
        assert config.attempt_timeout == 2.5
        assert config.cancel_grace == 5.0


class TestRecoveryConfig:
    """Tests for per-error-type retry settings."""

    def test_defaults_match_policy(self):
        config = RecoveryConfig()
        assert config.retry_for(ErrorType.TRANSIENT) == DEFAULT_RETRY_CONFIGS[ErrorType.TRANSIENT]

    def test_partial_override_keeps_other_keys(self):
        config = RecoveryConfig.from_dict(
            {"retry": {"transient": {"max_attempts": 2, "strategy": "linear"}}}
        )
        transient = config.retry_for(ErrorType.TRANSIENT)
        assert transient.max_attempts == 2
        assert transient.strategy == BackoffStrategy.LINEAR
        assert transient.max_delay == DEFAULT_RETRY_CONFIGS[ErrorType.TRANSIENT].max_delay
        assert config.retry_for(ErrorType.RETRIABLE) == DEFAULT_RETRY_CONFIGS[ErrorType.RETRIABLE]

    def test_unknown_error_type(self):
        with pytest.raises(ConfigError, match="Unknown error type"):
            RecoveryConfig.from_dict({"retry": {"flaky": {"max_attempts": 1}}})

    def test_invalid_strategy(self):
        with pytest.raises(ConfigError):
            RecoveryConfig.from_dict({"retry": {"transient": {"strategy": "random"}}})

    def test_to_dict_uses_type_names(self):
        data = RecoveryConfig().to_dict()
        assert set(data["retry"]) == {t.value for t in DEFAULT_RETRY_CONFIGS}


class TestOtherSections:
    def test_circuit(self):
        config = CircuitConfig.from_dict({"threshold": 3, "cooldown": 10})
        assert config.threshold == 3
        assert config.cooldown == 10.0
        assert config.window == 60.0

    def test_checkpoints(self):
        config = CheckpointConfig.from_dict({"directory": "/tmp/cp", "before_dispatch": True})
        assert config.directory == "/tmp/cp"
        assert config.before_dispatch is True
        assert config.max_checkpoints == 10

    def test_log_level_is_normalized(self):
        assert LoggingConfig.from_dict({"level": "DEBUG"}).level == "debug"

    def test_invalid_log_level(self):
        with pytest.raises(ConfigError, match="Invalid log level"):
            LoggingConfig.from_dict({"level": "loud"})


# =============================================================================
# ConductorConfig Tests
# =============================================================================


class TestConductorConfig:
    def test_from_dict(self):
        config = ConductorConfig.from_dict(
            {
                "dispatch": {"max_workers": 2},
                "ledger": {"path": ""},
                "scheduler": {"auto_advance": False},
            }
        )
        assert config.dispatch.max_workers == 2
        assert config.ledger.path == ""
        assert config.scheduler.auto_advance is False

    def test_wrong_type_raises_config_error(self):
        with pytest.raises(ConfigError, match="Invalid configuration"):
            ConductorConfig.from_dict({"dispatch": {"max_workers": "many"}})

    def test_get_dotted(self):
        config = ConductorConfig()
        assert config.get("circuit.cooldown") == 30.0
        assert config.get("dispatch.nope", "fallback") == "fallback"

    def test_to_dict_round_trip(self):
        config = ConductorConfig()
        config.circuit.threshold = 9
        restored = ConductorConfig.from_dict(config.to_dict())
        assert restored.circuit.threshold == 9
        assert restored.to_dict() == config.to_dict()


class TestEnvOverrides:
    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_LOG_LEVEL", "warning")
        monkeypatch.setenv("CONDUCTOR_MAX_WORKERS", "3")
        monkeypatch.setenv("CONDUCTOR_ATTEMPT_TIMEOUT", "1.5")
        monkeypatch.setenv("CONDUCTOR_LEDGER_PATH", "")
        monkeypatch.setenv("CONDUCTOR_CHECKPOINT_DIR", "/var/cp")
        config = ConductorConfig()
        config.apply_env_overrides()
        assert config.logging.level == "warning"
        assert config.dispatch.max_workers == 3
        assert config.dispatch.attempt_timeout == 1.5
        assert config.ledger.path == ""
        assert config.checkpoints.directory == "/var/cp"

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_MAX_WORKERS", "lots")
        with pytest.raises(ConfigError, match="CONDUCTOR_MAX_WORKERS"):
            ConductorConfig().apply_env_overrides()


# =============================================================================
# Loading and Saving
# =============================================================================


class TestLoadSave:
    def test_config_path_from_env(self, tmp_path):
        assert get_config_path() == tmp_path / "config.toml"

    def test_missing_file_gives_defaults(self):
        config = load_config()
        assert config.dispatch.max_workers == 8
        assert config.last_modified is None

    def test_save_and_load(self, tmp_path):
        config = ConductorConfig()
        config.dispatch.max_workers = 16
        config.recovery = RecoveryConfig.from_dict({"retry": {"fatal": {"max_attempts": 0}}})
        config.scheduler.pause_action_url = "https://ops.example.com/conflicts"
        path = save_config(config, tmp_path / "nested" / "config.toml")
        assert path.exists()

        loaded = load_config(path)
        assert loaded.dispatch.max_workers == 16
        assert loaded.scheduler.pause_action_url == "https://ops.example.com/conflicts"
        assert loaded.last_modified is not None
        assert loaded.config_path == path

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[dispatch\nmax_workers = ")
        with pytest.raises(ConfigError, match="Failed to load config"):
            load_config(path)

    def test_env_beats_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text("[dispatch]\nmax_workers = 4\n")
        monkeypatch.setenv("CONDUCTOR_MAX_WORKERS", "12")
        assert load_config(path).dispatch.max_workers == 12

    def test_cached_instance(self, tmp_path):
        first = get_config()
        assert get_config() is first
        (tmp_path / "config.toml").write_text("[circuit]\nthreshold = 2\n")
        assert get_config().circuit.threshold == 5
        assert reload_config().circuit.threshold == 2
        reset_config()
        assert get_config().circuit.threshold == 2
