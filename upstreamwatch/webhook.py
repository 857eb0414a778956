"""Best-effort webhook delivery for upstream transitions."""

import logging
from datetime import UTC, datetime

import requests

from .models import NotificationEvent, NotificationPayload

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def send_webhook(url: str, payload: NotificationPayload, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
    """POST a notification to a webhook URL.

    Delivery is attempted once. The response status is not inspected:
    once the request has been sent the notification counts as delivered.
    Network errors and timeouts are logged and dropped, never raised.

    Args:
        url: Destination URL.
        payload: Notification to send as the JSON body.
        timeout: Client-side timeout in seconds.
    """
    try:
        response = requests.post(
            url,
            json=payload.to_dict(),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
        logger.debug(
            "Webhook %s for %s sent to %s (HTTP %s)",
            payload.event.value,
            payload.upstream_key,
            url,
            response.status_code,
        )
    except requests.RequestException as e:
        logger.error("Failed to send webhook to %s: %s", url, e)


def send_test_webhook(url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> bool:
    """Send a sample notification to verify a webhook URL.

    Unlike send_webhook this checks the response status, since its only
    purpose is to tell the operator whether the receiver accepted it.

    Returns:
        True if the receiver answered with a 2xx status.
    """
    payload = NotificationPayload(
        event=NotificationEvent.UPSTREAM_UP,
        entity_label="test.example.com",
        upstream_key="127.0.0.1:8080",
        group_name=None,
        timestamp=datetime.now(UTC),
        response_ms=12,
        message="Test notification",
    )

    try:
        response = requests.post(
            url,
            json=payload.to_dict(),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
        response.raise_for_status()
        logger.info("Test webhook sent successfully to %s", url)
        return True
    except requests.RequestException as e:
        logger.error("Test webhook failed for %s: %s", url, e)
        return False
