"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Upper bound for a single probe. Probes run serially, so a long timeout
# multiplies across every upstream in the fleet.
MAX_PROBE_TIMEOUT_MS = 60_000


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory.

    Returns ~/.local/share/upstreamwatch/proxy.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "upstreamwatch" / "proxy.db")


# Default database path (XDG-compliant user data directory)
DEFAULT_DB_PATH = _get_default_db_path()

DEFAULT_CONFIG_PATH = "config.yaml"


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the SQLite store shared with the admin app."""

    path: str = DEFAULT_DB_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")


@dataclass(frozen=True)
class WatchdogConfig:
    """Process-level tunables of the watchdog.

    The cycle interval, retention window and global webhook URL are not
    here: they live in the store's settings table so the admin UI can
    change them.
    """

    boot_delay_seconds: float = 5.0  # lets the host process finish starting
    probe_timeout_ms: int = 3000
    webhook_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.boot_delay_seconds < 0:
            raise ConfigError(f"Boot delay must be non-negative (got {self.boot_delay_seconds})")
        if not (1 <= self.probe_timeout_ms <= MAX_PROBE_TIMEOUT_MS):
            raise ConfigError(
                f"Probe timeout must be between 1 and {MAX_PROBE_TIMEOUT_MS} ms (got {self.probe_timeout_ms})"
            )
        if self.webhook_timeout_seconds <= 0:
            raise ConfigError(f"Webhook timeout must be positive (got {self.webhook_timeout_seconds})")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(
        path=os.path.expanduser(str(data.get("path", DEFAULT_DB_PATH))),
    )


def _parse_watchdog_config(data: dict | None) -> WatchdogConfig:
    """Parse watchdog configuration section."""
    if data is None:
        return WatchdogConfig()
    if not isinstance(data, dict):
        raise ConfigError("'watchdog' section must be a dictionary")

    try:
        return WatchdogConfig(
            boot_delay_seconds=float(data.get("boot_delay_seconds", 5.0)),
            probe_timeout_ms=int(data.get("probe_timeout_ms", 3000)),
            webhook_timeout_seconds=float(data.get("webhook_timeout_seconds", 10.0)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in 'watchdog' section: {e}")


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - UPSTREAMWATCH_DB_PATH: Override database.path
    - UPSTREAMWATCH_PROBE_TIMEOUT_MS: Override watchdog.probe_timeout_ms
    - UPSTREAMWATCH_BOOT_DELAY_SECONDS: Override watchdog.boot_delay_seconds
    """
    for section in ("database", "watchdog"):
        if config_data.get(section) is None:
            config_data[section] = {}
        elif not isinstance(config_data[section], dict):
            raise ConfigError(f"'{section}' section must be a dictionary")

    db_path = os.environ.get("UPSTREAMWATCH_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    probe_timeout = os.environ.get("UPSTREAMWATCH_PROBE_TIMEOUT_MS")
    if probe_timeout is not None:
        try:
            config_data["watchdog"]["probe_timeout_ms"] = int(probe_timeout)
        except ValueError:
            raise ConfigError(f"UPSTREAMWATCH_PROBE_TIMEOUT_MS must be an integer, got '{probe_timeout}'")

    boot_delay = os.environ.get("UPSTREAMWATCH_BOOT_DELAY_SECONDS")
    if boot_delay is not None:
        try:
            config_data["watchdog"]["boot_delay_seconds"] = float(boot_delay)
        except ValueError:
            raise ConfigError(f"UPSTREAMWATCH_BOOT_DELAY_SECONDS must be a number, got '{boot_delay}'")

    return config_data


def load_config(config_path: str, required: bool = True) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.
        required: When False, a missing file yields the defaults
            (environment overrides still apply).

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        if required:
            raise ConfigError(f"Configuration file not found: {config_path}")
        data: dict = {}
    else:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}")

        # An empty file means "all defaults"
        if data is None:
            data = {}

        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    return Config(
        database=_parse_database_config(data.get("database")),
        watchdog=_parse_watchdog_config(data.get("watchdog")),
    )
