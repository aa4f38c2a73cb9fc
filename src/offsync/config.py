"""Configuration management with XDG-compliant storage."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

DEFAULT_SERVER_URL = "http://localhost:8000"

CACHE_STRATEGIES = ("memory_only", "durable_only", "hybrid")


def _strategy(value: Any) -> str:
    strategy = str(value).lower()
    if strategy not in CACHE_STRATEGIES:
        raise ValueError(f"expected one of {', '.join(CACHE_STRATEGIES)}")
    return strategy


def _positive(cast: Any) -> Any:
    def convert(value: Any) -> Any:
        number = cast(value)
        if number <= 0:
            raise ValueError("must be positive")
        return number

    return convert


def _non_negative_int(value: Any) -> int:
    number = int(value)
    if number < 0:
        raise ValueError("must not be negative")
    return number


def get_config_dir() -> Path:
    """Get XDG-compliant config directory for offsync.

    Returns:
        Path to ~/.config/offsync/
    """
    config_home = Path.home() / ".config"
    config_dir = config_home / "offsync"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_file() -> Path:
    """Get path to config file.

    Returns:
        Path to ~/.config/offsync/config.json
    """
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from file.

    Returns:
        Dictionary of configuration values, or empty dict if file doesn't exist.
    """
    config_file = get_config_file()
    if not config_file.exists():
        return {}

    with config_file.open("r") as f:
        data: dict[str, Any] = json.load(f)
        return data


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to file.

    Args:
        config: Dictionary of configuration values to save.
    """
    config_file = get_config_file()
    with config_file.open("w") as f:
        json.dump(config, f, indent=2)


def set_config_value(key: str, value: Any) -> Settings:
    """Set a single configuration value after validating it.

    Nothing is written unless the updated configuration still builds valid
    :class:`Settings`.

    Args:
        key: A :class:`Settings` field name.
        value: Value to store.

    Returns:
        Settings built from the updated configuration.

    Raises:
        ValueError: If the key is unknown or the value is invalid for it.
    """
    if key not in SETTING_KEYS:
        known = ", ".join(SETTING_KEYS)
        raise ValueError(f"Unknown setting '{key}'; expected one of: {known}")
    config = load_config()
    config[key] = value
    settings = Settings.from_config(config)
    save_config(config)
    return settings


@dataclass(frozen=True)
class Settings:
    """Typed view over the configuration file.

    Values set through ``offsync config set`` are stored as strings, so every
    field is coerced when the settings are built.
    """

    cache_strategy: str = "hybrid"
    default_ttl_seconds: float = 300.0
    batch_size: int = 50
    max_retries: int = 5
    retry_backoff_base: float = 2.0
    retry_backoff_max: float = 300.0
    remote_timeout: float = 10.0
    stale_claim_timeout: float = 300.0
    synced_retention_hours: float = 24.0
    sync_interval: float = 60.0
    sweep_interval: float = 60.0
    server_url: str = DEFAULT_SERVER_URL
    api_key: str | None = None
    database_path: Path | None = None

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None) -> Settings:
        """Build settings from a config mapping (the config file by default).

        Raises:
            ValueError: If a value cannot be coerced to its field type or is out
                of range.
        """
        if config is None:
            config = load_config()
        defaults = cls()

        def _get(key: str, cast: Any) -> Any:
            value = config.get(key)
            if value is None or value == "":
                return getattr(defaults, key)
            try:
                return cast(value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid value for '{key}': {value!r}") from e

        database_path = config.get("database_path")
        api_key = config.get("api_key")
        return cls(
            cache_strategy=_get("cache_strategy", _strategy),
            default_ttl_seconds=_get("default_ttl_seconds", _positive(float)),
            batch_size=_get("batch_size", _positive(int)),
            max_retries=_get("max_retries", _non_negative_int),
            retry_backoff_base=_get("retry_backoff_base", _positive(float)),
            retry_backoff_max=_get("retry_backoff_max", _positive(float)),
            remote_timeout=_get("remote_timeout", _positive(float)),
            stale_claim_timeout=_get("stale_claim_timeout", _positive(float)),
            synced_retention_hours=_get("synced_retention_hours", _positive(float)),
            sync_interval=_get("sync_interval", _positive(float)),
            sweep_interval=_get("sweep_interval", _positive(float)),
            server_url=_get("server_url", str),
            api_key=str(api_key) if api_key else None,
            database_path=Path(database_path) if database_path else None,
        )

    @property
    def synced_retention(self) -> timedelta:
        return timedelta(hours=self.synced_retention_hours)

    def resolved_database_path(self) -> Path:
        """Return the database path, defaulting to the config directory."""
        if self.database_path is not None:
            return self.database_path
        return get_config_dir() / "offsync.db"


# Keys accepted by ``offsync config set``
SETTING_KEYS = tuple(field.name for field in fields(Settings))
