"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Sweeping faster than this just piles probes onto slow targets.
MIN_MONITOR_INTERVAL = 10

MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 60_000

# Upper bound on simultaneous in-flight probes per sweep.
MAX_WORKERS_CEILING = 64


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for probing and the sweep scheduler."""

    enabled: bool = True  # run the interval scheduler under `sitewatch run`
    interval: int = 300  # seconds between sweeps
    timeout_ms: int = 5000  # per-probe timeout
    max_workers: int = 10  # concurrent probes per sweep

    def __post_init__(self) -> None:
        if self.interval < MIN_MONITOR_INTERVAL:
            raise ConfigError(
                f"Monitor interval must be at least {MIN_MONITOR_INTERVAL} seconds (got {self.interval})"
            )
        if not (MIN_TIMEOUT_MS <= self.timeout_ms <= MAX_TIMEOUT_MS):
            raise ConfigError(
                f"Probe timeout must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS} ms (got {self.timeout_ms})"
            )
        if not (1 <= self.max_workers <= MAX_WORKERS_CEILING):
            raise ConfigError(
                f"max_workers must be between 1 and {MAX_WORKERS_CEILING} (got {self.max_workers})"
            )


def _get_default_db_path() -> str:
    """Return ~/.local/share/sitewatch/sitewatch.db (XDG user data directory)."""
    return str(Path.home() / ".local" / "share" / "sitewatch" / "sitewatch.db")


DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for SQLite database."""

    path: str = DEFAULT_DB_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for JSON API server."""

    enabled: bool = True
    port: int = 3000

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _parse_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes")
    return bool(value)


def _parse_int(section: str, key: str, value: object) -> int:
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        raise ConfigError(f"'{section}.{key}' must be an integer, got {value!r}")


def _parse_monitor_config(data: dict | None) -> MonitorConfig:
    """Parse monitor configuration section."""
    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'monitor' section must be a dictionary")

    return MonitorConfig(
        enabled=_parse_bool(data.get("enabled", True)),
        interval=_parse_int("monitor", "interval", data.get("interval", 300)),
        timeout_ms=_parse_int("monitor", "timeout_ms", data.get("timeout_ms", 5000)),
        max_workers=_parse_int("monitor", "max_workers", data.get("max_workers", 10)),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    path = str(data.get("path", DEFAULT_DB_PATH))
    return DatabaseConfig(path=os.path.expanduser(path))


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    return ApiConfig(
        enabled=_parse_bool(data.get("enabled", True)),
        port=_parse_int("api", "port", data.get("port", 3000)),
    )


# Environment variable -> (section, key)
_ENV_OVERRIDES = {
    "SITEWATCH_MONITOR_INTERVAL": ("monitor", "interval"),
    "SITEWATCH_MONITOR_ENABLED": ("monitor", "enabled"),
    "SITEWATCH_TIMEOUT_MS": ("monitor", "timeout_ms"),
    "SITEWATCH_MAX_WORKERS": ("monitor", "max_workers"),
    "SITEWATCH_DB_PATH": ("database", "path"),
    "SITEWATCH_API_PORT": ("api", "port"),
    "SITEWATCH_API_ENABLED": ("api", "enabled"),
}


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply SITEWATCH_* environment variable overrides to raw config data."""
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        section_data = config_data.get(section)
        if section_data is None:
            section_data = config_data[section] = {}
        elif not isinstance(section_data, dict):
            raise ConfigError(f"'{section}' section must be a dictionary")
        section_data[key] = value
    return config_data


def load_config(config_path: str | None = None) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file. When None, defaults
            are used (environment overrides still apply).

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    data: object = {}

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}")

        if data is None:
            data = {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    return Config(
        monitor=_parse_monitor_config(data.get("monitor")),
        database=_parse_database_config(data.get("database")),
        api=_parse_api_config(data.get("api")),
    )
