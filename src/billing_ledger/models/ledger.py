from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerReason(str, Enum):
    MONTHLY_RESET = "monthly_reset"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    ADDON_PURCHASE = "addon_purchase"
    CONSUMPTION = "consumption"


class LedgerSource(str, Enum):
    SYSTEM = "system"
    ADDON = "addon"
    SUBSCRIPTION = "subscription"


def addon_idempotency_key(event_id: str) -> str:
    return f"stripe_event_{event_id}"


class CreditLedgerEntry(DBSerializableModel):
    """
    Append-only record of a credit balance mutation.

    Every entry carries the post-transaction balances, so the state of an
    account at any entry can be read without replaying earlier entries.
    """

    collection_name: ClassVar[str] = "credit_ledger"
    unique_fields: ClassVar[tuple[str, ...]] = ("idempotency_key",)

    id: Optional[str] = Field(default=None)
    user_id: str
    billing_account_id: str
    amount: int
    reason: LedgerReason
    source: LedgerSource
    idempotency_key: Optional[str] = None
    transaction_id: Optional[str] = Field(
        default=None,
        description="Groups entries written by the same reconciliation.",
    )
    description: Optional[str] = None
    monthly_credits_used_after: int
    addon_credits_balance_after: int
    created_at: datetime = Field(default_factory=utcnow)
