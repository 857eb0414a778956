"""SQLite operations for the configuration store and health check history."""

import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .models import EntityKind, HealthRecord, HealthStatus, HostGroup


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# Global lock for thread-safe database access.
# SQLite allows concurrent reads but only one writer at a time.
# This lock ensures safe access from the watchdog thread and CLI callers.
_db_lock = threading.Lock()

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware datetime to integer milliseconds since the epoch."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    """Convert integer milliseconds since the epoch to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=value)


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    The host, group and settings tables are owned by the admin app; they are
    created here only so the watchdog can run against a fresh file.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS host_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                webhook_url TEXT,
                created_at INTEGER
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS hosts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                group_id INTEGER REFERENCES host_groups(id) ON DELETE SET NULL,
                domains TEXT NOT NULL DEFAULT '[]',
                enabled INTEGER NOT NULL DEFAULT 1,
                locations TEXT NOT NULL DEFAULT '[]',
                stream_ports TEXT DEFAULT '[]',
                webhook_url TEXT,
                created_at INTEGER,
                updated_at INTEGER
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS health_checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                host_id INTEGER,
                host_type TEXT NOT NULL DEFAULT 'proxy',
                upstream TEXT NOT NULL,
                status TEXT NOT NULL,
                response_ms INTEGER,
                checked_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_health_checks_host_time
            ON health_checks(host_id, checked_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_health_checks_upstream_time
            ON health_checks(host_id, host_type, upstream, checked_at)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


# =============================================================================
# CONFIGURATION STORE (read-only)
# =============================================================================


def get_enabled_host_rows(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    """Return raw rows of all enabled hosts, ordered by id.

    JSON columns are returned undecoded; parsing them into typed locations
    is the target enumerator's job.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                """
                SELECT id, group_id, domains, enabled, locations, stream_ports, webhook_url
                FROM hosts
                WHERE enabled = 1
                ORDER BY id
                """
            )
            return cursor.fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read hosts: {e}")


def get_host_row(conn: sqlite3.Connection, host_id: int) -> sqlite3.Row | None:
    """Return the current row of a host, or None if it no longer exists.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                "SELECT id, group_id, domains, enabled, webhook_url FROM hosts WHERE id = ?",
                (host_id,),
            )
            return cursor.fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read host {host_id}: {e}")


def get_group(conn: sqlite3.Connection, group_id: int) -> HostGroup | None:
    """Return a host group by id, or None if it doesn't exist.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute(
                "SELECT id, name, webhook_url FROM host_groups WHERE id = ?",
                (group_id,),
            ).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read host group {group_id}: {e}")

    if row is None:
        return None
    return HostGroup(id=row["id"], name=row["name"], webhook_url=row["webhook_url"])


def get_setting(conn: sqlite3.Connection, key: str) -> str | None:
    """Return the raw value of a settings key, or None if absent.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read setting '{key}': {e}")

    return row["value"] if row else None


# =============================================================================
# HEALTH CHECK HISTORY
# =============================================================================


def _row_to_record(row: sqlite3.Row) -> HealthRecord:
    return HealthRecord(
        entity_id=row["host_id"],
        entity_kind=EntityKind(row["host_type"]),
        upstream_key=row["upstream"],
        status=HealthStatus(row["status"]),
        response_ms=row["response_ms"],
        checked_at=from_epoch_ms(row["checked_at"]),
    )


def insert_health_check(conn: sqlite3.Connection, record: HealthRecord) -> None:
    """Append a health check record. Existing records are never touched.

    Thread-safe: acquires global lock before database access.

    Args:
        conn: Database connection.
        record: Health record to append.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO health_checks
                (host_id, host_type, upstream, status, response_ms, checked_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.entity_id,
                    record.entity_kind.value,
                    record.upstream_key,
                    record.status.value,
                    record.response_ms,
                    to_epoch_ms(record.checked_at),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert health check: {e}")


def get_latest_health_status(
    conn: sqlite3.Connection,
    entity_id: int,
    entity_kind: EntityKind,
    upstream_key: str,
) -> HealthStatus | None:
    """Return the most recently recorded status of an upstream.

    "Most recent" is the greatest checked_at; records sharing a timestamp
    are ordered by insertion.

    Args:
        conn: Database connection.
        entity_id: Owning host id.
        entity_kind: Proxy location or stream port.
        upstream_key: "server:port" key.

    Returns:
        The latest status, or None if the upstream has never been checked.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute(
                """
                SELECT status FROM health_checks
                WHERE host_id = ? AND host_type = ? AND upstream = ?
                ORDER BY checked_at DESC, id DESC
                LIMIT 1
                """,
                (entity_id, entity_kind.value, upstream_key),
            ).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read latest health status: {e}")

    return HealthStatus(row["status"]) if row else None


def get_latest_health_checks(conn: sqlite3.Connection) -> list[HealthRecord]:
    """Return the latest record of every upstream in the history.

    Ordered by host id, then kind, then upstream key.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            rows = conn.execute(
                """
                WITH ranked AS (
                    SELECT
                        host_id, host_type, upstream, status, response_ms, checked_at,
                        ROW_NUMBER() OVER (
                            PARTITION BY host_id, host_type, upstream
                            ORDER BY checked_at DESC, id DESC
                        ) AS rn
                    FROM health_checks
                )
                SELECT host_id, host_type, upstream, status, response_ms, checked_at
                FROM ranked
                WHERE rn = 1
                ORDER BY host_id, host_type, upstream
                """
            ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read latest health checks: {e}")

    return [_row_to_record(row) for row in rows]


def cleanup_old_health_checks(
    conn: sqlite3.Connection,
    retention_days: float,
    now: datetime | None = None,
) -> int:
    """Delete health checks older than the retention period.

    A record whose checked_at equals the cutoff is kept.

    Thread-safe: acquires global lock before database access.

    Args:
        conn: Database connection.
        retention_days: Delete records older than this many days.
        now: Reference time, defaults to the current time.

    Returns:
        Number of deleted records.

    Raises:
        DatabaseError: If the cleanup fails.
    """
    if now is None:
        now = datetime.now(UTC)
    try:
        cutoff = to_epoch_ms(now - timedelta(days=retention_days))
    except OverflowError:
        # Window reaches back past datetime.min, nothing is old enough
        return 0

    try:
        with _db_lock:
            cursor = conn.execute(
                "DELETE FROM health_checks WHERE checked_at < ?",
                (cutoff,),
            )
            deleted = cursor.rowcount
            conn.commit()

        return deleted

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to cleanup old health checks: {e}")


def delete_all_health_checks(conn: sqlite3.Connection) -> int:
    """Delete all health check records from the database.

    Thread-safe: acquires global lock before database access.

    Returns:
        Number of deleted records.

    Raises:
        DatabaseError: If the delete fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM health_checks")
            deleted = cursor.rowcount
            conn.commit()

        return deleted

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete all health checks: {e}")
