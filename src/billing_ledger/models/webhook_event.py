from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class WebhookEventStatus(str, Enum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEventRecord(DBSerializableModel):
    """
    Idempotency gate state for one provider event id.

    absent -> processing -> processed | failed; failed -> processing (retry).
    """

    collection_name: ClassVar[str] = "webhook_events"
    unique_fields: ClassVar[tuple[str, ...]] = ("event_id",)

    id: Optional[str] = Field(default=None)
    event_id: str
    event_type: str
    status: WebhookEventStatus = WebhookEventStatus.PROCESSING
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
