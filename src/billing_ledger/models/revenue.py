from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class RevenueSource(str, Enum):
    SUBSCRIPTION_INVOICE = "subscription_invoice"
    ADDON_CHECKOUT = "addon_checkout"


class RevenueEvent(DBSerializableModel):
    """
    Monetary event received from the provider, amounts in minor units.

    ``estimated_fee`` is written once and kept as the historical estimate;
    ``actual_fee`` is filled in when the provider reports it.
    """

    collection_name: ClassVar[str] = "revenue_events"
    unique_fields: ClassVar[tuple[str, ...]] = ("event_id",)

    id: Optional[str] = Field(default=None)
    event_id: str
    object_id: Optional[str] = None
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    source: RevenueSource
    amount: int
    currency: str
    estimated_fee: int
    actual_fee: Optional[int] = None
    net_amount: int
    occurred_at: int = Field(description="Provider timestamp in ms epoch.")
    created_at: datetime = Field(default_factory=utcnow)
