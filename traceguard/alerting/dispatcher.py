"""Notification dispatch to the external notification service.

The service owns channel fan-out (email, Discord, ...). Dispatch is
best-effort: every failure is logged and reported as False, never raised, so a
failed delivery cannot roll back the state transition that caused it. Each
request carries an Idempotency-Key so retried dispatches of the same
transition can be deduplicated by the channel adapters.
"""

import logging
from datetime import UTC, datetime
from typing import TypedDict

import httpx

from traceguard.alerting.models import AlertState
from traceguard.config import get_settings
from traceguard.observability.metrics import NOTIFICATIONS_TOTAL

logger = logging.getLogger(__name__)


class NotificationPayload(TypedDict):
    alertId: str
    state: str
    value: float
    threshold: float
    triggeredAt: str


class NotificationResponse(TypedDict, total=False):
    channelCount: int
    sentCount: int
    failedCount: int


def is_notification_configured() -> bool:
    """Check whether a notification service URL is configured."""
    return bool(get_settings().notification_url)


def _notification_headers(dedup_key: str) -> dict[str, str]:
    settings = get_settings()
    headers = {"Accept": "application/json", "Idempotency-Key": dedup_key}
    if settings.internal_api_secret:
        headers["Authorization"] = f"Bearer {settings.internal_api_secret}"
    return headers


class NotificationDispatcher:
    """Sends alert state notifications to the notification service."""

    async def dispatch(
        self,
        alert_id: str,
        new_state: AlertState,
        value: float,
        threshold: float,
        dedup_key: str,
    ) -> bool:
        """Request fan-out of one notification.

        Returns:
            True if the service accepted the notification, False otherwise.
        """
        settings = get_settings()
        if not settings.notification_url:
            logger.warning("Notification service not configured, skipping dispatch for alert %s", alert_id)
            NOTIFICATIONS_TOTAL.labels(state=new_state.value, status="skipped").inc()
            return False

        payload = NotificationPayload(
            alertId=alert_id,
            state=new_state.value,
            value=value,
            threshold=threshold,
            triggeredAt=datetime.now(UTC).isoformat(),
        )

        try:
            async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
                response = await client.post(
                    f"{settings.notification_url}/notifications",
                    json=payload,
                    headers=_notification_headers(dedup_key),
                )
                _ = response.raise_for_status()
                body: NotificationResponse = response.json() if response.content else {}
        except Exception:
            NOTIFICATIONS_TOTAL.labels(state=new_state.value, status="error").inc()
            logger.exception("Failed to dispatch notification for alert %s (%s)", alert_id, new_state.value)
            return False

        NOTIFICATIONS_TOTAL.labels(state=new_state.value, status="success").inc()
        logger.info(
            "Notification for alert %s (%s) sent to %d channel(s)",
            alert_id,
            new_state.value,
            body.get("channelCount", 0),
        )
        return True
