"""Access to runtime tunables stored in the settings table."""

import logging
import math
import sqlite3
from dataclasses import dataclass

from .database import get_setting

logger = logging.getLogger(__name__)

WATCHDOG_INTERVAL_KEY = "watchdog_interval_ms"
HEALTH_RETENTION_KEY = "health_retention_days"
GLOBAL_WEBHOOK_KEY = "global_webhook_url"

DEFAULT_INTERVAL_MS = 30_000
DEFAULT_RETENTION_DAYS = 7

# Guards against a zero or tiny interval turning the watchdog into a busy loop.
MIN_INTERVAL_MS = 1000

# Longer waits overflow the platform timeout of Event.wait().
MAX_INTERVAL_MS = 86_400_000

# Keeps the retention cutoff within the range of datetime.
MAX_RETENTION_DAYS = 36_500


def get_str_setting(conn: sqlite3.Connection, key: str, default: str = "") -> str:
    """Return a setting as a string, or ``default`` when absent or empty."""
    value = get_setting(conn, key)
    if value is None or not str(value).strip():
        return default
    return str(value).strip()


def get_number_setting(conn: sqlite3.Connection, key: str, default: float) -> float:
    """Return a numeric setting, or ``default`` when absent, empty or unparsable."""
    raw = get_str_setting(conn, key)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Setting %s has non-numeric value %r, using default %s", key, raw, default)
        return default
    if not math.isfinite(value):
        logger.warning("Setting %s is not a finite number (%s), using default %s", key, raw, default)
        return default
    if value < 0:
        logger.warning("Setting %s is negative (%s), using default %s", key, raw, default)
        return default
    return value


def get_interval_ms(conn: sqlite3.Connection) -> int:
    """Cycle interval in milliseconds."""
    interval = int(get_number_setting(conn, WATCHDOG_INTERVAL_KEY, DEFAULT_INTERVAL_MS))
    if interval < MIN_INTERVAL_MS:
        logger.warning(
            "Watchdog interval %dms is below the %dms minimum, using %dms",
            interval,
            MIN_INTERVAL_MS,
            MIN_INTERVAL_MS,
        )
        return MIN_INTERVAL_MS
    if interval > MAX_INTERVAL_MS:
        logger.warning(
            "Watchdog interval %dms is above the %dms maximum, using %dms",
            interval,
            MAX_INTERVAL_MS,
            MAX_INTERVAL_MS,
        )
        return MAX_INTERVAL_MS
    return interval


def get_retention_days(conn: sqlite3.Connection) -> float:
    """History retention window in days."""
    days = get_number_setting(conn, HEALTH_RETENTION_KEY, DEFAULT_RETENTION_DAYS)
    if days > MAX_RETENTION_DAYS:
        logger.warning("Retention of %s days is above the %d day maximum", days, MAX_RETENTION_DAYS)
        return MAX_RETENTION_DAYS
    return days


def get_global_webhook_url(conn: sqlite3.Connection) -> str | None:
    """Fleet-wide fallback webhook URL, or None when unset."""
    return get_str_setting(conn, GLOBAL_WEBHOOK_KEY) or None


@dataclass(frozen=True)
class WatchdogSettings:
    """Settings snapshot read when the watchdog starts.

    The watchdog keeps only the interval from it; changing the interval
    requires a restart. Retention and the global webhook URL are logged at
    start and re-read from the table each time they are used.
    """

    interval_ms: int = DEFAULT_INTERVAL_MS
    retention_days: float = DEFAULT_RETENTION_DAYS
    global_webhook_url: str | None = None


def load_watchdog_settings(conn: sqlite3.Connection) -> WatchdogSettings:
    """Read all watchdog settings, applying defaults."""
    return WatchdogSettings(
        interval_ms=get_interval_ms(conn),
        retention_days=get_retention_days(conn),
        global_webhook_url=get_global_webhook_url(conn),
    )
