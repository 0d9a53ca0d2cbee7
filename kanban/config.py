"""
Configuration loading and validation.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/kanban.db"


@dataclass
class SchedulerConfig:
    """Rule scheduler configuration."""

    interval_seconds: int = 300
    max_workers: int = 1
    refresh_indicators: bool = True
    lookup_timeout_seconds: float = 10
    history_limit: int = 100


@dataclass
class DiscordNotificationConfig:
    """Discord notification settings."""

    webhook_url: Optional[str] = None
    mention_on_alerts: bool = True
    timeout_seconds: float = 10


@dataclass
class EmailNotificationConfig:
    """Email notification settings."""

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    from_address: Optional[str] = None
    timeout_seconds: float = 10


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    discord: DiscordNotificationConfig = field(
        default_factory=DiscordNotificationConfig
    )
    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)
    dispatch_workers: int = 2


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _require_positive(section: dict[str, Any], key: str, label: str) -> None:
    value = section.get(key)
    if value is None:
        return
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ConfigValidationError(f"{label} must be a positive number: {value!r}")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    scheduler = config_dict.get("scheduler") or {}
    _require_positive(scheduler, "interval_seconds", "scheduler.interval_seconds")
    _require_positive(scheduler, "max_workers", "scheduler.max_workers")
    _require_positive(scheduler, "lookup_timeout_seconds", "scheduler.lookup_timeout_seconds")
    history_limit = scheduler.get("history_limit")
    if history_limit is not None and (not isinstance(history_limit, int) or history_limit < 20):
        raise ConfigValidationError(
            f"scheduler.history_limit must be at least 20: {history_limit!r}"
        )

    notifications = config_dict.get("notifications") or {}
    _require_positive(notifications, "dispatch_workers", "notifications.dispatch_workers")
    for channel in ("discord", "email"):
        _require_positive(
            notifications.get(channel) or {},
            "timeout_seconds",
            f"notifications.{channel}.timeout_seconds",
        )

    # Check log level
    advanced = config_dict.get("advanced") or {}
    log_level = str(advanced.get("log_level", "INFO")).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigValidationError(f"Unknown log level: {log_level}")


def _none_if_blank(section: dict[str, Any]) -> dict[str, Any]:
    # ${VAR} with an unset variable substitutes to ""
    return {k: (None if v == "" else v) for k, v in section.items()}


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    # Validate
    _validate_config(config_dict)

    try:
        database = DatabaseConfig(**config_dict.get("database", {}))
        scheduler = SchedulerConfig(**(config_dict.get("scheduler") or {}))

        notif_dict = dict(config_dict.get("notifications") or {})
        discord_dict = _none_if_blank(notif_dict.pop("discord", None) or {})
        email_dict = _none_if_blank(notif_dict.pop("email", None) or {})
        notifications = NotificationsConfig(
            discord=DiscordNotificationConfig(**discord_dict),
            email=EmailNotificationConfig(**email_dict),
            **notif_dict,
        )

        advanced = AdvancedConfig(**(config_dict.get("advanced") or {}))
    except TypeError as e:
        raise ConfigValidationError(f"Unknown configuration key: {e}") from e

    advanced.log_level = advanced.log_level.upper()

    return AppConfig(
        database=database,
        scheduler=scheduler,
        notifications=notifications,
        advanced=advanced,
    )
