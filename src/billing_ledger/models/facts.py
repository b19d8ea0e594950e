"""
Provider-agnostic facts derived from inbound webhook events.

The translator turns a provider event into zero or more facts; the
processor applies each fact with exactly one handler. Nothing past the
translator looks at provider payload shapes.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .billing import PlanKey
from .revenue import RevenueSource


class SubscriptionFact(BaseModel):
    kind: Literal["subscription"] = "subscription"
    user_id: Optional[str] = None
    customer_id: str
    subscription_id: str
    plan_key: PlanKey
    provider_status: str
    period_start: Optional[int] = None
    period_end: Optional[int] = None


class AddonPurchaseFact(BaseModel):
    kind: Literal["addon_purchase"] = "addon_purchase"
    customer_id: str
    user_id: Optional[str] = None
    credits: int
    event_id: Optional[str] = None
    checkout_session_id: Optional[str] = None


class RevenueFact(BaseModel):
    kind: Literal["revenue"] = "revenue"
    event_id: str
    object_id: Optional[str] = None
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    source: RevenueSource
    amount: int
    currency: str
    occurred_at: int
    actual_fee: Optional[int] = None


class PaymentFailedFact(BaseModel):
    kind: Literal["payment_failed"] = "payment_failed"
    customer_id: str


Fact = Annotated[
    Union[SubscriptionFact, AddonPurchaseFact, RevenueFact, PaymentFailedFact],
    Field(discriminator="kind"),
]
