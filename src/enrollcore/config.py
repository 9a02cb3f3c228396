"""Configuration loading for the enrollment engine.

Settings resolve in three layers: built-in defaults, an optional YAML file,
then ``ENROLLCORE_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "enrollcore.yaml"
ENV_PREFIX = "ENROLLCORE_"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""


@dataclass
class Settings:
    """Engine settings.

    Attributes:
        db_path: SQLite file path, ":memory:", or a full SQLAlchemy URL.
        busy_timeout: Seconds a connection waits on a locked database.
        max_conflict_retries: Attempts for units of work hitting transient conflicts.
        retry_backoff: Base back-off in seconds between attempts (linear).
        default_currency: Currency used when a request names none.
        coupon_code_attempts: Attempts for generating a non-colliding coupon code.
        coupon_code_length: Random part length of generated coupon codes.
        gateway_url: Payment gateway base URL (refunds). Empty disables the gateway.
        gateway_token: Bearer token for the payment gateway.
        log_dir: Log directory.
        log_level: Log level name.
    """

    db_path: str = "enrollcore.db"
    busy_timeout: float = 30.0
    max_conflict_retries: int = 5
    retry_backoff: float = 0.05
    default_currency: str = "INR"
    coupon_code_attempts: int = 10
    coupon_code_length: int = 8
    gateway_url: str = ""
    gateway_token: str = ""
    log_dir: str = "logs"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """Create settings from a dictionary.

        Args:
            data: Mapping of setting name to value.

        Returns:
            Parsed settings.

        Raises:
            ConfigError: If a key is unknown or a value has the wrong type.
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(unknown)}")

        values: dict[str, Any] = {}
        for name, value in data.items():
            values[name] = _coerce(name, value, type(getattr(cls, name)))
        settings = cls(**values)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value is out of range.
        """
        if self.max_conflict_retries < 1:
            raise ConfigError("max_conflict_retries must be at least 1")
        if self.coupon_code_attempts < 1:
            raise ConfigError("coupon_code_attempts must be at least 1")
        if not 4 <= self.coupon_code_length <= 40:
            raise ConfigError("coupon_code_length must be between 4 and 40")
        if self.busy_timeout < 0 or self.retry_backoff < 0:
            raise ConfigError("timeouts must not be negative")


def _coerce(name: str, value: Any, target: type) -> Any:
    if isinstance(value, target):
        return value
    try:
        if target is bool:
            return str(value).strip().lower() in ("1", "true", "yes", "on")
        return target(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from defaults, an optional YAML file and the environment.

    Args:
        config_path: Path to a YAML settings file. When None, ``enrollcore.yaml``
            in the current directory is used if present.

    Returns:
        Resolved settings.

    Raises:
        ConfigError: If the file is missing (when given explicitly) or invalid.
    """
    data: dict[str, Any] = {}

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        data.update(_read_yaml(path))
    elif Path(CONFIG_FILENAME).exists():
        data.update(_read_yaml(Path(CONFIG_FILENAME)))

    for f in fields(Settings):
        env_value = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
        if env_value is not None:
            data[f.name] = env_value

    return Settings.from_dict(data)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a YAML mapping, got {type(data).__name__}")
    return data
