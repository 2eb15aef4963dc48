from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from driftwatch.services.models import ContentAlert, ContentMonitor

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when an alert notification cannot be delivered."""


class Notifier(Protocol):
    async def notify(self, alert: ContentAlert, monitor: ContentMonitor) -> str | None: ...


def build_alert_message(alert: ContentAlert, monitor: ContentMonitor) -> dict[str, Any]:
    updated_at = monitor.updated_at or alert.start_at
    return {
        "subject": f"Monitor {alert.reason.value}: {monitor.guid}",
        "intro": "The following monitor has changed:",
        "table": [
            ["ID", monitor.guid],
            ["Organisation", monitor.code],
            ["Status", monitor.status.value],
            ["Reason", alert.reason.value],
            ["Updated", updated_at.isoformat() if updated_at else ""],
        ],
        "alert_id": alert.id,
        "monitor_id": monitor.id,
        "session_id": alert.session_id,
        "attributes": alert.attributes,
    }


class LoggingNotifier:
    async def notify(self, alert: ContentAlert, monitor: ContentMonitor) -> str | None:
        message = build_alert_message(alert, monitor)
        logger.info(
            "alert notification (no webhook configured) alert_id=%s subject=%s",
            alert.id,
            message["subject"],
        )
        return None


class WebhookNotifier:
    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.url = url
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def notify(self, alert: ContentAlert, monitor: ContentMonitor) -> str | None:
        payload = build_alert_message(alert, monitor)
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise NotificationError(f"webhook delivery failed: {exc}") from exc

        if response.status_code >= 400:
            raise NotificationError(f"webhook answered {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        delivery_id = body.get("delivery_id") if isinstance(body, dict) else None
        return str(delivery_id) if delivery_id is not None else None


def build_notifier(webhook_url: str | None, *, timeout_seconds: float = 5.0) -> Notifier:
    if webhook_url:
        return WebhookNotifier(webhook_url, timeout_seconds=timeout_seconds)
    return LoggingNotifier()
