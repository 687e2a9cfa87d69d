"""
Configuration settings management for Proofline.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.proofline/config.yaml by default, with the
path overridable via the PROOFLINE_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".proofline"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"


@dataclass
class ResilienceConfig:
    """Inner retry and circuit breaker settings for external calls."""

    max_attempts: int = 5
    base_delay_ms: int = 1000
    failure_threshold: int = 5
    reset_timeout_ms: int = 60_000
    # Share breaker state between worker processes through the database
    shared_breaker_state: bool = False


@dataclass
class LedgerConfig:
    """Evidence ledger settings."""

    offload_threshold_bytes: int = 100 * 1024


@dataclass
class BlobStorageConfig:
    """Blob storage for offloaded evidence payloads."""

    backend: str = "local"
    local_dir: str = str(DEFAULT_CONFIG_DIR / "blobs")
    bucket: str = ""
    region: str = "us-east-1"


@dataclass
class QueueConfig:
    """Outer job queue retry policy."""

    max_attempts: int = 3
    backoff_base_ms: int = 1000
    poll_interval_seconds: float = 1.0
    visibility_timeout_seconds: float = 900.0


@dataclass
class WorkersConfig:
    """Number of consumer threads per named queue."""

    evidence_collection: int = 2
    compliance_check: int = 2


@dataclass
class SchedulerConfig:
    """Periodic check fan-out settings."""

    interval: str = "daily"


@dataclass
class RemediationConfig:
    """Remediation coordinator settings."""

    deduplicate_tickets: bool = True
    default_project_key: str = "COMP"
    resolved_status: str = "Done"


@dataclass
class NotificationsConfig:
    """Alert notification settings."""

    slack_webhook_url: str = ""


@dataclass
class Settings:
    """
    Complete Proofline configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with PROOFLINE_.

    Attributes:
        data_dir: Directory holding the SQLite database and salt file.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        resilience: Retry and circuit breaker settings.
        ledger: Evidence ledger settings.
        blob_storage: Offload storage settings.
        queue: Outer job retry policy.
        workers: Worker pool sizes.
        scheduler: Check fan-out interval.
        remediation: Ticketing behaviour on FAIL.
        notifications: Alert channel settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"

    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    blob_storage: BlobStorageConfig = field(default_factory=BlobStorageConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    remediation: RemediationConfig = field(default_factory=RemediationConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    @property
    def db_path(self) -> Path:
        """Path to the SQLite database."""
        return Path(self.data_dir) / "proofline.db"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from PROOFLINE_CONFIG environment variable if set,
    otherwise returns the default path (~/.proofline/config.yaml).
    """
    env_path = os.environ.get("PROOFLINE_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses PROOFLINE_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


# Section name -> (attribute on Settings, {yaml key: converter})
_SECTION_FIELDS: dict[str, dict[str, Callable[[Any], Any]]] = {
    "resilience": {
        "max_attempts": int,
        "base_delay_ms": int,
        "failure_threshold": int,
        "reset_timeout_ms": int,
        "shared_breaker_state": bool,
    },
    "ledger": {"offload_threshold_bytes": int},
    "blob_storage": {"backend": str, "local_dir": str, "bucket": str, "region": str},
    "queue": {
        "max_attempts": int,
        "backoff_base_ms": int,
        "poll_interval_seconds": float,
        "visibility_timeout_seconds": float,
    },
    "workers": {"evidence_collection": int, "compliance_check": int},
    "scheduler": {"interval": str},
    "remediation": {
        "deduplicate_tickets": bool,
        "default_project_key": str,
        "resolved_status": str,
    },
    "notifications": {"slack_webhook_url": str},
}


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    proofline_data = data.get("proofline", {})

    if "data_dir" in proofline_data:
        settings.data_dir = str(proofline_data["data_dir"])
    if "log_level" in proofline_data:
        settings.log_level = str(proofline_data["log_level"]).upper()

    for section, fields in _SECTION_FIELDS.items():
        section_data = data.get(section) or {}
        target = getattr(settings, section)
        for key, converter in fields.items():
            if key in section_data:
                try:
                    setattr(target, key, converter(section_data[key]))
                except (TypeError, ValueError) as e:
                    raise ConfigurationError(
                        f"Invalid value for {section}.{key}: {section_data[key]!r}"
                    ) from e

    return settings


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "PROOFLINE_DATA_DIR": ("data_dir", str),
        "PROOFLINE_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "PROOFLINE_SLACK_WEBHOOK_URL": ("notifications.slack_webhook_url", str),
        "PROOFLINE_BLOB_BACKEND": ("blob_storage.backend", str),
        "PROOFLINE_BLOB_BUCKET": ("blob_storage.bucket", str),
        "PROOFLINE_SHARED_BREAKER_STATE": ("resilience.shared_breaker_state", _parse_bool),
        "PROOFLINE_SCHEDULE_INTERVAL": ("scheduler.interval", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.resilience.max_attempts < 1:
        raise ConfigurationError("resilience.max_attempts must be at least 1")
    if settings.resilience.failure_threshold < 1:
        raise ConfigurationError("resilience.failure_threshold must be at least 1")
    if settings.queue.max_attempts < 1:
        raise ConfigurationError("queue.max_attempts must be at least 1")
    if settings.queue.visibility_timeout_seconds <= 0:
        raise ConfigurationError("queue.visibility_timeout_seconds must be positive")
    if settings.ledger.offload_threshold_bytes < 1:
        raise ConfigurationError("ledger.offload_threshold_bytes must be positive")

    if settings.blob_storage.backend not in {"local", "s3"}:
        raise ConfigurationError(
            f"Invalid blob_storage.backend: {settings.blob_storage.backend}. "
            "Must be one of: local, s3"
        )
    if settings.blob_storage.backend == "s3" and not settings.blob_storage.bucket:
        raise ConfigurationError("blob_storage.bucket is required for the s3 backend")

    valid_intervals = {"hourly", "daily", "weekly"}
    if settings.scheduler.interval not in valid_intervals:
        raise ConfigurationError(
            f"Invalid scheduler.interval: {settings.scheduler.interval}. "
            f"Must be one of: {', '.join(sorted(valid_intervals))}"
        )


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    data: dict[str, Any] = {
        "proofline": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
        },
    }
    for section, fields in _SECTION_FIELDS.items():
        target = getattr(settings, section)
        data[section] = {key: getattr(target, key) for key in fields}
    return data
