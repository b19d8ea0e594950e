from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class PlanKey(str, Enum):
    NONE = "none"
    STARTER = "starter"
    GROWTH = "growth"
    DOMINANT = "dominant"


class BillingStatus(str, Enum):
    NONE = "none"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


PLAN_RANK: Dict[PlanKey, int] = {
    PlanKey.NONE: 0,
    PlanKey.STARTER: 1,
    PlanKey.GROWTH: 2,
    PlanKey.DOMINANT: 3,
}

DEFAULT_PLAN_MONTHLY_CREDITS: Dict[PlanKey, int] = {
    PlanKey.NONE: 0,
    PlanKey.STARTER: 10,
    PlanKey.GROWTH: 25,
    PlanKey.DOMINANT: 50,
}

# Statuses the payment provider is allowed to set on an account.
PROVIDER_STATUSES = frozenset(s for s in BillingStatus if s is not BillingStatus.NONE)


def plan_rank(plan_key: PlanKey | str) -> int:
    return PLAN_RANK[PlanKey(plan_key)]


def map_provider_status(provider_status: str | None) -> BillingStatus:
    """
    Map a provider subscription status onto the internal enum.

    Statuses the provider adds in the future land on ``incomplete`` instead
    of being rejected.
    """
    try:
        status = BillingStatus(provider_status)
    except ValueError:
        return BillingStatus.INCOMPLETE
    if status not in PROVIDER_STATUSES:
        return BillingStatus.INCOMPLETE
    return status


class BillingAccount(DBSerializableModel):
    """
    One billing account per user, kept in sync with the payment provider.

    Period bounds are provider timestamps in ms epoch.
    """

    collection_name: ClassVar[str] = "billing_accounts"
    unique_fields: ClassVar[tuple[str, ...]] = ("user_id", "subscription_id")

    id: Optional[str] = Field(default=None)
    user_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_key: PlanKey = PlanKey.NONE
    status: BillingStatus = BillingStatus.NONE
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    monthly_credit_limit: int = 0
    monthly_credits_used: int = 0
    addon_credits_balance: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def monthly_credits_remaining(self) -> int:
        return max(self.monthly_credit_limit - self.monthly_credits_used, 0)


class PriceMapping(DBSerializableModel):
    """
    Catalogue row mapping an internal key (usually a plan key) to a
    provider price id.
    """

    collection_name: ClassVar[str] = "price_mappings"
    unique_fields: ClassVar[tuple[str, ...]] = ("key",)

    id: Optional[str] = Field(default=None)
    key: str
    price_id: str
    updated_at: datetime = Field(default_factory=utcnow)
