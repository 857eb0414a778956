"""Transition detection and webhook notification for probed upstreams."""

import logging
import sqlite3
from datetime import UTC, datetime

from .database import get_group, get_host_row, get_latest_health_status, insert_health_check
from .models import (
    HealthRecord,
    HealthStatus,
    NotificationEvent,
    NotificationPayload,
    ProbeResult,
    ProbeTarget,
)
from .prober import DEFAULT_TIMEOUT_MS, probe
from .settings import get_global_webhook_url
from .webhook import DEFAULT_TIMEOUT_SECONDS, send_webhook

logger = logging.getLogger(__name__)

DOWN_FALLBACK_MESSAGE = "Connection failed"
RECOVERED_MESSAGE = "Upstream recovered"


def resolve_webhook_url(
    conn: sqlite3.Connection,
    entity_webhook_url: str | None,
    group_id: int | None,
) -> str | None:
    """Pick the webhook URL for an entity.

    Precedence: the entity's own URL, then its group's URL, then the
    global default. Empty strings count as unset. Nothing is cached, so a
    URL changed in the admin UI applies to the next transition.

    Returns:
        The URL to notify, or None if no level has one.
    """
    if entity_webhook_url and entity_webhook_url.strip():
        return entity_webhook_url.strip()

    if group_id is not None:
        group = get_group(conn, group_id)
        if group is not None and group.webhook_url and group.webhook_url.strip():
            return group.webhook_url.strip()

    return get_global_webhook_url(conn)


def build_payload(
    target: ProbeTarget,
    result: ProbeResult,
    group_name: str | None,
    timestamp: datetime | None = None,
) -> NotificationPayload:
    """Build the notification for a transition to ``result.status``."""
    if result.is_up:
        event = NotificationEvent.UPSTREAM_UP
        message = RECOVERED_MESSAGE
        response_ms = result.response_ms
    else:
        event = NotificationEvent.UPSTREAM_DOWN
        message = result.error or DOWN_FALLBACK_MESSAGE
        response_ms = None

    return NotificationPayload(
        event=event,
        entity_label=target.entity_label,
        upstream_key=target.upstream_key,
        group_name=group_name,
        timestamp=timestamp or datetime.now(UTC),
        response_ms=response_ms,
        message=message,
    )


class Notifier:
    """Probes targets, records results and notifies on status changes.

    Each probe result is compared with the last stored status of the same
    (entity, kind, upstream). The first observation of an upstream never
    notifies; every later change notifies exactly once, with no cooldown.

    Example:
        notifier = Notifier(db_conn)
        for target in enumerate_targets(db_conn):
            notifier.process_target(target)
    """

    def __init__(
        self,
        db_conn: sqlite3.Connection,
        probe_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        webhook_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the notifier.

        Args:
            db_conn: Connection to the store holding hosts, groups, settings and history.
            probe_timeout_ms: Deadline of each probe.
            webhook_timeout: Client-side timeout of each webhook POST, in seconds.
        """
        self._db_conn = db_conn
        self._probe_timeout_ms = probe_timeout_ms
        self._webhook_timeout = webhook_timeout

    def process_target(self, target: ProbeTarget) -> NotificationPayload | None:
        """Probe one target, store the result and notify on a transition.

        Returns:
            The payload that was dispatched, or None when nothing was sent.

        Raises:
            DatabaseError: If history or configuration can't be read or written.
        """
        previous = get_latest_health_status(
            self._db_conn,
            target.entity_id,
            target.entity_kind,
            target.upstream_key,
        )

        result = probe(target.server, target.port, self._probe_timeout_ms)
        checked_at = datetime.now(UTC)

        insert_health_check(
            self._db_conn,
            HealthRecord(
                entity_id=target.entity_id,
                entity_kind=target.entity_kind,
                upstream_key=target.upstream_key,
                status=result.status,
                response_ms=result.response_ms if result.is_up else None,
                checked_at=checked_at,
            ),
        )

        logger.debug(
            "%s %s [%s]: %s (%dms)",
            target.entity_label,
            target.upstream_key,
            target.entity_kind.value,
            result.status.value.upper(),
            result.response_ms,
        )

        if previous is None or previous == result.status:
            return None

        if result.status is HealthStatus.DOWN:
            logger.warning(
                "Upstream %s of %s is DOWN: %s",
                target.upstream_key,
                target.entity_label,
                result.error or DOWN_FALLBACK_MESSAGE,
            )
        else:
            logger.info("Upstream %s of %s is UP again", target.upstream_key, target.entity_label)

        return self._notify(target, result, checked_at)

    def _notify(
        self,
        target: ProbeTarget,
        result: ProbeResult,
        checked_at: datetime,
    ) -> NotificationPayload | None:
        """Resolve the destination from current configuration and send."""
        host = get_host_row(self._db_conn, target.entity_id)
        entity_webhook_url = host["webhook_url"] if host is not None else None
        group_id = host["group_id"] if host is not None else None

        url = resolve_webhook_url(self._db_conn, entity_webhook_url, group_id)
        if url is None:
            logger.debug("No webhook configured for %s, skipping notification", target.entity_label)
            return None

        group = get_group(self._db_conn, group_id) if group_id is not None else None
        payload = build_payload(target, result, group.name if group else None, checked_at)

        send_webhook(url, payload, timeout=self._webhook_timeout)
        return payload
