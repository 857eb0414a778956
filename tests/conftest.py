"""Shared fixtures for the upstreamwatch test suite."""

import json
import sqlite3
from collections.abc import Callable
from pathlib import Path

import pytest

from upstreamwatch.database import init_db


@pytest.fixture
def db_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


@pytest.fixture
def add_group(db_conn: sqlite3.Connection) -> Callable[..., int]:
    """Insert a host group and return its id."""

    def _add(name: str = "production", webhook_url: str | None = None) -> int:
        cursor = db_conn.execute(
            "INSERT INTO host_groups (name, webhook_url) VALUES (?, ?)",
            (name, webhook_url),
        )
        db_conn.commit()
        return cursor.lastrowid

    return _add


@pytest.fixture
def add_host(db_conn: sqlite3.Connection) -> Callable[..., int]:
    """Insert a host and return its id. List arguments are stored as JSON."""

    def _add(
        domains: list | str | None = None,
        locations: list | str | None = None,
        stream_ports: list | str | None = None,
        enabled: bool = True,
        group_id: int | None = None,
        webhook_url: str | None = None,
    ) -> int:
        def encode(value: list | str | None, default: list) -> str | None:
            if value is None:
                value = default
            return value if isinstance(value, str) else json.dumps(value)

        cursor = db_conn.execute(
            """
            INSERT INTO hosts (domains, enabled, locations, stream_ports, group_id, webhook_url)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                encode(domains, ["app.example.com"]),
                1 if enabled else 0,
                encode(locations, []),
                encode(stream_ports, []),
                group_id,
                webhook_url,
            ),
        )
        db_conn.commit()
        return cursor.lastrowid

    return _add


@pytest.fixture
def set_setting(db_conn: sqlite3.Connection) -> Callable[[str, str | None], None]:
    """Insert or replace a row of the settings table."""

    def _set(key: str, value: str | None) -> None:
        db_conn.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        db_conn.commit()

    return _set

