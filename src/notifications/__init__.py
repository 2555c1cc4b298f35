"""Incident notifications: outbox producer and webhook dispatcher.

The classifier only ever calls ``IncidentNotifier.notify_incident``, which
writes the envelope to the outbox and returns. ``NotificationDispatcher``
delivers outbox rows to the webhook in the background, retrying with
exponential backoff, so webhook downtime never touches classification.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from src.health.models import Severity

from .outbox import NotificationOutbox, OutboundNotification

logger = logging.getLogger(__name__)


def incident_envelope(
    incident_id: str, site_id: str, severity: Severity | str, is_new: bool = True,
) -> dict[str, Any]:
    """The fixed JSON body posted to the notification webhook."""
    return {
        "incident_id": incident_id,
        "site_id": site_id,
        "severity": Severity(severity).value,
        "is_new": is_new,
    }


class IncidentNotifier:
    """Queues incident notifications; never raises into the caller."""

    def __init__(self, outbox: NotificationOutbox) -> None:
        self.outbox = outbox

    def notify_incident(
        self,
        incident_id: str,
        site_id: str,
        severity: Severity | str,
        is_new: bool = True,
    ) -> OutboundNotification | None:
        try:
            item = self.outbox.enqueue(incident_envelope(incident_id, site_id, severity, is_new))
        except Exception:
            logger.exception("Failed to queue notification for incident %s", incident_id)
            return None
        logger.info("Queued notification %s for incident %s", item.id, incident_id)
        return item


class NotificationDispatcher:
    """Delivers queued envelopes to the webhook with retry and backoff."""

    def __init__(
        self,
        outbox: NotificationOutbox,
        webhook_url: str = "",
        token: str = "",
        interval: float = 15.0,
        max_attempts: int = 8,
        backoff: float = 30.0,
        max_backoff: float = 3600.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.outbox = outbox
        self.webhook_url = webhook_url
        self.token = token
        self.interval = interval
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.max_backoff = max_backoff
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self._running,
            "outbox": self.outbox.counts(),
        }

    def retry_delay(self, attempts: int) -> float:
        """Backoff before the next attempt, after ``attempts`` failures."""
        return min(self.backoff * (2 ** max(attempts - 1, 0)), self.max_backoff)

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        if not self.enabled:
            logger.info("Notification dispatcher disabled (no webhook_url)")
            return
        self._running = True
        self._task = asyncio.create_task(self._dispatch_loop(), name="notification-dispatcher")
        logger.info("Notification dispatcher started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("Notification dispatcher stopped")

    # -- delivery --------------------------------------------------------------

    async def deliver_pending(self, now: datetime | None = None) -> int:
        """Attempt every due row once; return how many were delivered."""
        if not self.enabled:
            return 0
        delivered = 0
        for item in self.outbox.due(now):
            if await self._deliver(item):
                delivered += 1
        return delivered

    async def _deliver(self, item: OutboundNotification) -> bool:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = await self._get_client().post(self.webhook_url, json=item.payload, headers=headers)
            if resp.is_success:
                self.outbox.mark_delivered(item.id)
                logger.debug("Delivered notification %s", item.id)
                return True
            error = f"Webhook returned {resp.status_code}: {resp.text[:200]}"
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"

        attempts = item.attempts + 1
        if attempts >= self.max_attempts:
            logger.error("Giving up on notification %s after %d attempts: %s", item.id, attempts, error)
            self.outbox.mark_failed(item.id, error, None)
        else:
            next_at = datetime.now(timezone.utc) + timedelta(seconds=self.retry_delay(attempts))
            logger.warning("Notification %s failed (attempt %d): %s", item.id, attempts, error)
            self.outbox.mark_failed(item.id, error, next_at)
        return False

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10)
        return self._client

    async def _dispatch_loop(self) -> None:
        while self._running:
            try:
                await self.deliver_pending()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Notification dispatch error")
            await asyncio.sleep(self.interval)
