from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Set

from ..db.base import BaseDBManager
from ..models.base import utcnow
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)

_MESSAGES: Dict[NotificationType, tuple[str, str]] = {
    NotificationType.SUBSCRIPTION_CANCELED: (
        "Your subscription was canceled",
        "Your subscription has been canceled. You can resubscribe at any time from the settings page.",
    ),
    NotificationType.PAYMENT_FAILED: (
        "Payment problem",
        "We could not collect your subscription payment. Please update your payment method to avoid an interruption.",
    ),
}


class NotificationService:
    """
    Fire-and-forget delivery of billing notifications.

    Each notification runs as its own task, detached from the caller's
    database transaction. Failures are recorded and logged, never raised
    to the caller.
    """

    def __init__(self, db: BaseDBManager, queue: AsyncNotificationQueue) -> None:
        self._db = db
        self._queue = queue
        self._pending: Set[asyncio.Task[None]] = set()

    def notify_subscription_canceled(self, user_id: str) -> asyncio.Task[None]:
        return self._schedule(
            user_id, NotificationType.SUBSCRIPTION_CANCELED, {"event": "subscription_canceled"}
        )

    def notify_payment_failed(self, user_id: str) -> asyncio.Task[None]:
        return self._schedule(
            user_id, NotificationType.PAYMENT_FAILED, {"event": "payment_failed"}
        )

    async def drain(self) -> None:
        """Wait for outstanding deliveries, e.g. on shutdown."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(
        self, user_id: str, notification_type: NotificationType, payload: Dict[str, Any]
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(self._deliver(user_id, notification_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Notification delivery failed: %s", exc, exc_info=exc)

    async def _deliver(
        self, user_id: str, notification_type: NotificationType, payload: Dict[str, Any]
    ) -> None:
        title, body = _MESSAGES[notification_type]
        event = NotificationEvent(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            body=body,
            payload=payload,
        )
        event = await self._db.add_notification_event(event)

        try:
            await self._queue.enqueue(
                {
                    "notification_id": event.id,
                    "type": event.notification_type.value,
                    "user_id": user_id,
                    "title": title,
                    "body": body,
                    "payload": event.payload,
                }
            )
        except Exception as exc:
            event.status = NotificationStatus.FAILED
            event.error_message = str(exc)
            await self._db.update_notification_event(event)
            raise

        event.status = NotificationStatus.SENT
        event.sent_at = utcnow()
        await self._db.update_notification_event(event)
