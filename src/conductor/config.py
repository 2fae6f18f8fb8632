"""Unified configuration for conductor.

Configuration is stored at ~/.conductor/config.toml and organized into
sections.

Configuration loading priority:
1. Environment variables (highest)
2. Config file (~/.conductor/config.toml, or $CONDUCTOR_CONFIG)
3. Defaults (lowest)

Sections:
    [dispatch]                  - Worker pool, concurrency and attempt timeouts
    [recovery.retry.<type>]     - Retry policy per error type
    [circuit]                   - Per-agent circuit breaker
    [checkpoints]               - Checkpoint retention and persistence
    [ledger]                    - Execution ledger database
    [scheduler]                 - Phase scheduling behaviour
    [logging]                   - Log level

Example:
    from conductor.config import get_config

    config = get_config()
    print(config.dispatch.max_workers)
    print(config.recovery.retry_for(ErrorType.TRANSIENT).max_attempts)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import tomli_w

from .errors import ConfigError
from .recovery.classifier import ErrorType
from .recovery.policy import DEFAULT_RETRY_CONFIGS, RetryConfig

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".conductor"
DEFAULT_CONFIG_FILE = "config.toml"

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

_config: ConductorConfig | None = None


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class DispatchConfig:
    """Task dispatch settings.

    Attributes:
        max_workers: Worker threads running dispatch loops.
        default_concurrency: Concurrent tasks per agent type when the plan
            does not set ``max_concurrent``.
        attempt_timeout: Seconds a first attempt may run (0 for no limit).
        cancel_grace: Seconds an in-flight invocation gets after its phase
            is cancelled.
    """

    max_workers: int = 8
    default_concurrency: int = 1
    attempt_timeout: float = 0.0
    cancel_grace: float = 5.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DispatchConfig:
        return cls(
            max_workers=int(data.get("max_workers", 8)),
            default_concurrency=int(data.get("default_concurrency", 1)),
            attempt_timeout=float(data.get("attempt_timeout", 0.0)),
            cancel_grace=float(data.get("cancel_grace", 5.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_workers": self.max_workers,
            "default_concurrency": self.default_concurrency,
            "attempt_timeout": self.attempt_timeout,
            "cancel_grace": self.cancel_grace,
        }


@dataclass
class RecoveryConfig:
    """Retry policy per error type.

    Missing error types, and missing keys within a type, fall back to the
    built-in defaults.
    """

    retry: dict[ErrorType, RetryConfig] = field(
        default_factory=lambda: dict(DEFAULT_RETRY_CONFIGS)
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryConfig:
        retry = dict(DEFAULT_RETRY_CONFIGS)
        for name, values in data.get("retry", {}).items():
            try:
                error_type = ErrorType(name)
            except ValueError:
                raise ConfigError(f"Unknown error type in [recovery.retry]: {name}") from None
            try:
                retry[error_type] = RetryConfig.from_dict(values, base=retry[error_type])
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid [recovery.retry.{name}]: {e}") from e
        return cls(retry=retry)

    def retry_for(self, error_type: ErrorType) -> RetryConfig:
        return self.retry.get(error_type, DEFAULT_RETRY_CONFIGS[error_type])

    def to_dict(self) -> dict[str, Any]:
        return {"retry": {t.value: c.to_dict() for t, c in self.retry.items()}}


@dataclass
class CircuitConfig:
    """Circuit breaker settings.

    Attributes:
        threshold: Counted failures within ``window`` that open a circuit
            (error types may set a tighter threshold).
        window: Sliding window in seconds.
        cooldown: Seconds an open circuit waits before a half-open probe.
    """

    threshold: int = 5
    window: float = 60.0
    cooldown: float = 30.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CircuitConfig:
        return cls(
            threshold=int(data.get("threshold", 5)),
            window=float(data.get("window", 60.0)),
            cooldown=float(data.get("cooldown", 30.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold,
            "window": self.window,
            "cooldown": self.cooldown,
        }


@dataclass
class CheckpointConfig:
    """Checkpoint settings.

    Attributes:
        directory: Where checkpoints are persisted ("" keeps them in memory).
        max_checkpoints: Checkpoints retained in the store.
        max_age: Seconds after which a checkpoint is discarded (0 for never).
        persist_interval: Seconds between periodic checkpoints during a run.
        before_dispatch: Capture a checkpoint before every task dispatch.
    """

    directory: str = ""
    max_checkpoints: int = 10
    max_age: float = 86400.0
    persist_interval: float = 60.0
    before_dispatch: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointConfig:
        return cls(
            directory=data.get("directory", ""),
            max_checkpoints=int(data.get("max_checkpoints", 10)),
            max_age=float(data.get("max_age", 86400.0)),
            persist_interval=float(data.get("persist_interval", 60.0)),
            before_dispatch=data.get("before_dispatch", False),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "directory": self.directory,
            "max_checkpoints": self.max_checkpoints,
            "max_age": self.max_age,
            "persist_interval": self.persist_interval,
            "before_dispatch": self.before_dispatch,
        }


@dataclass
class LedgerConfig:
    """Execution ledger settings. An empty path disables the ledger."""

    path: str = ".conductor/ledger.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerConfig:
        return cls(path=data.get("path", ".conductor/ledger.db"))

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path}


@dataclass
class SchedulerConfig:
    """Phase scheduler settings.

    Attributes:
        auto_advance: Start dependent phases once their prerequisites complete.
        poll_interval: Seconds between scheduler checks while running.
        pause_action_url: Action URL attached to pause events.
    """

    auto_advance: bool = True
    poll_interval: float = 0.1
    pause_action_url: str = "/conflicts"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchedulerConfig:
        return cls(
            auto_advance=data.get("auto_advance", True),
            poll_interval=float(data.get("poll_interval", 0.1)),
            pause_action_url=data.get("pause_action_url", "/conflicts"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_advance": self.auto_advance,
            "poll_interval": self.poll_interval,
            "pause_action_url": self.pause_action_url,
        }


@dataclass
class LoggingConfig:
    level: str = "info"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingConfig:
        level = str(data.get("level", "info")).lower()
        if level not in LOG_LEVELS:
            raise ConfigError(f"Invalid log level '{level}', expected one of {LOG_LEVELS}")
        return cls(level=level)

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level}


# =============================================================================
# Main Configuration
# =============================================================================


@dataclass
class ConductorConfig:
    """Main configuration container.

    Use get_config() to get the process-scoped instance.
    """

    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Metadata
    config_version: str = "1.0"
    config_path: Path | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConductorConfig:
        """Create configuration from a dictionary.

        Raises:
            ConfigError: If a section holds values of the wrong type.
        """
        try:
            return cls(
                dispatch=DispatchConfig.from_dict(data.get("dispatch", {})),
                recovery=RecoveryConfig.from_dict(data.get("recovery", {})),
                circuit=CircuitConfig.from_dict(data.get("circuit", {})),
                checkpoints=CheckpointConfig.from_dict(data.get("checkpoints", {})),
                ledger=LedgerConfig.from_dict(data.get("ledger", {})),
                scheduler=SchedulerConfig.from_dict(data.get("scheduler", {})),
                logging=LoggingConfig.from_dict(data.get("logging", {})),
                config_version=data.get("config", {}).get("version", "1.0"),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": {"version": self.config_version},
            "dispatch": self.dispatch.to_dict(),
            "recovery": self.recovery.to_dict(),
            "circuit": self.circuit.to_dict(),
            "checkpoints": self.checkpoints.to_dict(),
            "ledger": self.ledger.to_dict(),
            "scheduler": self.scheduler.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def apply_env_overrides(self) -> None:
        """Apply CONDUCTOR_* environment variable overrides."""
        if level := os.environ.get("CONDUCTOR_LOG_LEVEL"):
            self.logging = LoggingConfig.from_dict({"level": level})
        if workers := os.environ.get("CONDUCTOR_MAX_WORKERS"):
            self.dispatch.max_workers = _env_number("CONDUCTOR_MAX_WORKERS", workers, int)
        if timeout := os.environ.get("CONDUCTOR_ATTEMPT_TIMEOUT"):
            self.dispatch.attempt_timeout = _env_number(
                "CONDUCTOR_ATTEMPT_TIMEOUT", timeout, float
            )
        if "CONDUCTOR_LEDGER_PATH" in os.environ:
            self.ledger.path = os.environ["CONDUCTOR_LEDGER_PATH"]
        if "CONDUCTOR_CHECKPOINT_DIR" in os.environ:
            self.checkpoints.directory = os.environ["CONDUCTOR_CHECKPOINT_DIR"]

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key path, e.g. ``config.get('circuit.cooldown')``."""
        obj: Any = self
        for part in key.split("."):
            if hasattr(obj, part):
                obj = getattr(obj, part)
            elif isinstance(obj, dict) and part in obj:
                obj = obj[part]
            else:
                return default
        return obj


def _env_number(name: str, raw: str, convert: type) -> Any:
    try:
        return convert(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got '{raw}'") from None


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    if custom_path := os.environ.get("CONDUCTOR_CONFIG"):
        return Path(custom_path)
    return DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> ConductorConfig:
    """Load configuration from a TOML file plus environment overrides.

    A missing file yields the defaults.

    Raises:
        ConfigError: If the file cannot be parsed or holds invalid values.
    """
    path = config_path or get_config_path()

    config = ConductorConfig()
    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e
        config = ConductorConfig.from_dict(data)
        config.last_modified = datetime.fromtimestamp(path.stat().st_mtime)
        logger.debug("Loaded config from %s", path)
    config.config_path = path

    config.apply_env_overrides()
    return config


def save_config(config: ConductorConfig, config_path: Path | None = None) -> Path:
    """Save configuration to a TOML file and return the path written."""
    path = config_path or config.config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        tomli_w.dump(config.to_dict(), f)

    config.config_path = path
    config.last_modified = datetime.now()
    logger.info("Saved config to %s", path)
    return path


def get_config() -> ConductorConfig:
    """Get the process-scoped configuration, loading it on first call."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> ConductorConfig:
    """Force reload configuration from file."""
    global _config
    _config = load_config()
    return _config


def reset_config() -> None:
    """Reset the cached instance so the next access reloads."""
    global _config
    _config = None
