"""Tests for transition detection and notification dispatch."""

import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from upstreamwatch.database import get_latest_health_checks, get_latest_health_status
from upstreamwatch.models import (
    EntityKind,
    HealthStatus,
    NotificationEvent,
    ProbeResult,
    ProbeTarget,
)
from upstreamwatch.notifier import Notifier, build_payload, resolve_webhook_url

UP = ProbeResult(status=HealthStatus.UP, response_ms=12)
DOWN = ProbeResult(status=HealthStatus.DOWN, response_ms=3001, error="Connection timed out")


def make_target(host_id: int, key: str = "10.0.0.5:8080") -> ProbeTarget:
    server, port = key.rsplit(":", 1)
    return ProbeTarget(
        entity_id=host_id,
        entity_kind=EntityKind.PROXY,
        upstream_key=key,
        server=server,
        port=int(port),
        entity_label="shop.example.com",
    )


def run_sequence(notifier: Notifier, target: ProbeTarget, results: list[ProbeResult]) -> list:
    """Process the target once per result and return the dispatched payloads."""
    payloads = []
    with patch("upstreamwatch.notifier.probe", side_effect=results):
        for _ in results:
            payloads.append(notifier.process_target(target))
    return payloads


class TestBuildPayload:
    """Tests for build_payload()."""

    def test_down_payload(self) -> None:
        """Down events carry the probe error and no response time."""
        ts = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)
        payload = build_payload(make_target(1), DOWN, "production", ts)

        assert payload.event is NotificationEvent.UPSTREAM_DOWN
        assert payload.message == "Connection timed out"
        assert payload.response_ms is None
        assert payload.group_name == "production"
        assert payload.timestamp == ts

    def test_down_payload_without_error(self) -> None:
        """A down result with no error text uses a generic message."""
        result = ProbeResult(status=HealthStatus.DOWN, response_ms=5)
        assert build_payload(make_target(1), result, None).message == "Connection failed"

    def test_up_payload(self) -> None:
        """Recovery events carry the measured response time."""
        payload = build_payload(make_target(1), UP, None)

        assert payload.event is NotificationEvent.UPSTREAM_UP
        assert payload.message == "Upstream recovered"
        assert payload.response_ms == 12
        assert payload.entity_label == "shop.example.com"
        assert payload.upstream_key == "10.0.0.5:8080"


class TestResolveWebhookUrl:
    """Precedence of entity, group and global URLs."""

    @pytest.mark.parametrize(
        ("entity_url", "group_url", "global_url", "expected"),
        [
            ("https://e", "https://g", "https://x", "https://e"),
            (None, "https://g", "https://x", "https://g"),
            (None, None, "https://x", "https://x"),
            (None, None, None, None),
            ("", "", "https://x", "https://x"),
        ],
    )
    def test_precedence(
        self,
        db_conn: sqlite3.Connection,
        add_group: Callable[..., int],
        set_setting: Callable,
        entity_url: str | None,
        group_url: str | None,
        global_url: str | None,
        expected: str | None,
    ) -> None:
        """The most specific non-empty URL wins."""
        group_id = add_group(webhook_url=group_url)
        if global_url is not None:
            set_setting("global_webhook_url", global_url)

        assert resolve_webhook_url(db_conn, entity_url, group_id) == expected

    def test_missing_group(self, db_conn: sqlite3.Connection, set_setting: Callable) -> None:
        """A dangling group id falls through to the global URL."""
        set_setting("global_webhook_url", "https://x")
        assert resolve_webhook_url(db_conn, None, 999) == "https://x"


class TestNotifier:
    """Tests for Notifier.process_target()."""

    def test_first_observation_records_without_notifying(
        self, db_conn: sqlite3.Connection, add_host: Callable[..., int]
    ) -> None:
        """No previous record means no notification, even when down."""
        host_id = add_host(webhook_url="https://hooks.example.com/a")
        target = make_target(host_id)

        with patch("upstreamwatch.notifier.send_webhook") as mock_send:
            payloads = run_sequence(Notifier(db_conn), target, [DOWN])

        assert payloads == [None]
        mock_send.assert_not_called()
        assert get_latest_health_status(db_conn, host_id, EntityKind.PROXY, "10.0.0.5:8080") is HealthStatus.DOWN

    def test_steady_state_never_notifies(self, db_conn: sqlite3.Connection, add_host: Callable[..., int]) -> None:
        """Repeated identical results produce no notifications."""
        host_id = add_host(webhook_url="https://hooks.example.com/a")

        with patch("upstreamwatch.notifier.send_webhook") as mock_send:
            run_sequence(Notifier(db_conn), make_target(host_id), [UP, UP, UP, UP])

        mock_send.assert_not_called()
        count = db_conn.execute("SELECT COUNT(*) FROM health_checks").fetchone()[0]
        assert count == 4

    def test_transition_notifies_once(self, db_conn: sqlite3.Connection, add_host: Callable[..., int]) -> None:
        """Each change notifies exactly once; repeats after a change don't."""
        host_id = add_host(webhook_url="https://hooks.example.com/a")

        with patch("upstreamwatch.notifier.send_webhook") as mock_send:
            run_sequence(Notifier(db_conn), make_target(host_id), [UP, DOWN, DOWN, DOWN])

        assert mock_send.call_count == 1
        url, payload = mock_send.call_args.args
        assert url == "https://hooks.example.com/a"
        assert payload.event is NotificationEvent.UPSTREAM_DOWN

    def test_down_record_has_no_response_time(self, db_conn: sqlite3.Connection, add_host: Callable[..., int]) -> None:
        """Down results are stored with a null response time."""
        host_id = add_host()

        with patch("upstreamwatch.notifier.send_webhook"):
            run_sequence(Notifier(db_conn), make_target(host_id), [DOWN])

        (record,) = get_latest_health_checks(db_conn)
        assert record.status is HealthStatus.DOWN
        assert record.response_ms is None

    def test_group_webhook_down_then_up(
        self,
        db_conn: sqlite3.Connection,
        add_group: Callable[..., int],
        add_host: Callable[..., int],
    ) -> None:
        """An upstream that fails and recovers sends down then up to the group URL."""
        group_id = add_group(name="production", webhook_url="https://hooks.example.com/group")
        host_id = add_host(domains=["shop.example.com"], group_id=group_id)
        notifier = Notifier(db_conn, webhook_timeout=4.0)

        with patch("upstreamwatch.notifier.send_webhook") as mock_send:
            payloads = run_sequence(notifier, make_target(host_id), [UP, DOWN, UP])

        assert payloads[0] is None
        assert mock_send.call_count == 2

        first_url, first = mock_send.call_args_list[0].args
        second_url, second = mock_send.call_args_list[1].args
        assert first_url == second_url == "https://hooks.example.com/group"
        assert first.event is NotificationEvent.UPSTREAM_DOWN
        assert first.group_name == "production"
        assert first.message == "Connection timed out"
        assert second.event is NotificationEvent.UPSTREAM_UP
        assert second.response_ms == 12
        assert mock_send.call_args_list[0].kwargs["timeout"] == 4.0

    def test_global_webhook_used_without_host_or_group_url(
        self,
        db_conn: sqlite3.Connection,
        add_host: Callable[..., int],
        set_setting: Callable,
    ) -> None:
        """With only a global URL configured, it receives the transition."""
        set_setting("global_webhook_url", "https://hooks.example.com/global")
        host_id = add_host()

        with patch("upstreamwatch.notifier.send_webhook") as mock_send:
            run_sequence(Notifier(db_conn), make_target(host_id), [DOWN, UP])

        mock_send.assert_called_once()
        assert mock_send.call_args.args[0] == "https://hooks.example.com/global"
        assert mock_send.call_args.args[1].group_name is None

    def test_no_webhook_configured_still_records(
        self, db_conn: sqlite3.Connection, add_host: Callable[..., int]
    ) -> None:
        """Without any URL, history is still written and nothing is sent."""
        host_id = add_host()

        with patch("upstreamwatch.notifier.send_webhook") as mock_send:
            payloads = run_sequence(Notifier(db_conn), make_target(host_id), [UP, DOWN, UP])

        assert payloads == [None, None, None]
        mock_send.assert_not_called()
        count = db_conn.execute("SELECT COUNT(*) FROM health_checks").fetchone()[0]
        assert count == 3

    def test_webhook_url_change_applies_to_next_transition(
        self, db_conn: sqlite3.Connection, add_host: Callable[..., int]
    ) -> None:
        """The destination is looked up when the transition happens."""
        host_id = add_host(webhook_url="https://hooks.example.com/old")
        notifier = Notifier(db_conn)
        target = make_target(host_id)

        with patch("upstreamwatch.notifier.send_webhook") as mock_send:
            run_sequence(notifier, target, [UP, DOWN])
            db_conn.execute("UPDATE hosts SET webhook_url = ? WHERE id = ?", ("https://hooks.example.com/new", host_id))
            db_conn.commit()
            run_sequence(notifier, target, [UP])

        urls = [c.args[0] for c in mock_send.call_args_list]
        assert urls == ["https://hooks.example.com/old", "https://hooks.example.com/new"]

    def test_upstreams_tracked_independently(self, db_conn: sqlite3.Connection, add_host: Callable[..., int]) -> None:
        """A change on one upstream doesn't affect another of the same host."""
        host_id = add_host(webhook_url="https://hooks.example.com/a")
        notifier = Notifier(db_conn)
        a = make_target(host_id, "10.0.0.5:8080")
        b = make_target(host_id, "10.0.0.6:8080")

        with patch("upstreamwatch.notifier.send_webhook") as mock_send:
            run_sequence(notifier, a, [UP])
            run_sequence(notifier, b, [DOWN])
            run_sequence(notifier, a, [UP])
            run_sequence(notifier, b, [DOWN])

        mock_send.assert_not_called()

    def test_probe_uses_configured_timeout(self, db_conn: sqlite3.Connection, add_host: Callable[..., int]) -> None:
        """The probe deadline comes from the notifier."""
        host_id = add_host()

        with patch("upstreamwatch.notifier.probe", return_value=UP) as mock_probe:
            Notifier(db_conn, probe_timeout_ms=750).process_target(make_target(host_id))

        mock_probe.assert_called_once_with("10.0.0.5", 8080, 750)
