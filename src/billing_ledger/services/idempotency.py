from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager, DuplicateKeyError
from ..models.base import utcnow
from ..models.webhook_event import WebhookEventRecord, WebhookEventStatus


logger = logging.getLogger(__name__)


def _now() -> datetime:
    # Millisecond precision, so claim stamps compare equal after a MongoDB round trip.
    now = utcnow()
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


class IdempotencyGuard:
    """
    Admits each provider event into processing exactly once.

    Every state change goes through a backend primitive that is atomic
    across processes: a unique insert for first delivery and a
    compare-and-set for retries. A caller that loses either race sees
    ``False`` from `begin` and treats the event as handled.

    A ``processing`` record older than ``stale_after`` is presumed to belong
    to a crashed worker and may be re-claimed. `complete` and `fail` only
    apply while the record still carries this guard's claim, so a slow
    worker whose claim was taken over cannot overwrite the new outcome.
    """

    def __init__(
        self,
        db: BaseDBManager,
        stale_after: Optional[timedelta] = timedelta(minutes=15),
    ) -> None:
        self._db = db
        self._stale_after = stale_after
        self._claims: Dict[str, datetime] = {}

    async def begin(self, event_id: str, event_type: str) -> bool:
        existing = await self._db.get_webhook_event(event_id)

        if existing is None:
            now = _now()
            try:
                await self._db.insert_webhook_event(
                    WebhookEventRecord(
                        event_id=event_id, event_type=event_type, created_at=now, updated_at=now
                    )
                )
            except DuplicateKeyError:
                logger.info("Webhook event %s claimed concurrently; skipping", event_id)
                return False
            self._claims[event_id] = now
            return True

        if existing.status == WebhookEventStatus.PROCESSED:
            return False
        if existing.status == WebhookEventStatus.PROCESSING and not self._is_stale(existing):
            return False

        if existing.status == WebhookEventStatus.PROCESSING:
            logger.warning(
                "Re-claiming webhook event %s stuck in processing since %s",
                event_id,
                existing.updated_at.isoformat(),
            )

        # Strictly later than the stamp being replaced, so the previous owner's claim no longer matches.
        now = max(_now(), existing.updated_at + timedelta(milliseconds=1))
        claimed = await self._db.transition_webhook_event(
            event_id,
            expected_status=existing.status,
            expected_updated_at=existing.updated_at,
            changes={
                "event_type": event_type,
                "status": WebhookEventStatus.PROCESSING,
                "error": None,
                "updated_at": now,
            },
        )
        if claimed:
            self._claims[event_id] = now
        else:
            logger.info("Webhook event %s retried concurrently; skipping", event_id)
        return claimed

    async def complete(self, event_id: str) -> bool:
        now = _now()
        return await self._finish(
            event_id,
            {"status": WebhookEventStatus.PROCESSED, "processed_at": now, "updated_at": now},
        )

    async def fail(self, event_id: str, error: str) -> bool:
        return await self._finish(
            event_id,
            {"status": WebhookEventStatus.FAILED, "error": error, "updated_at": _now()},
        )

    async def _finish(self, event_id: str, changes: Dict[str, Any]) -> bool:
        applied = await self._db.transition_webhook_event(
            event_id,
            expected_status=WebhookEventStatus.PROCESSING,
            expected_updated_at=self._claims.pop(event_id, None),
            changes=changes,
        )
        if not applied:
            logger.warning(
                "Webhook event %s was re-claimed by another worker; dropping %s",
                event_id,
                changes["status"].value,
            )
        return applied

    def _is_stale(self, record: WebhookEventRecord, now: Optional[datetime] = None) -> bool:
        if self._stale_after is None:
            return False
        return (now or utcnow()) - record.updated_at >= self._stale_after
