from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    ok: bool
    message: str | None = None


class BillingAccountResponse(BaseModel):
    id: str
    user_id: str
    customer_id: str | None = None
    subscription_id: str | None = None
    plan_key: str
    status: str
    current_period_start: int | None = None
    current_period_end: int | None = None
    monthly_credit_limit: int
    monthly_credits_used: int
    monthly_credits_remaining: int
    addon_credits_balance: int


class CreditLedgerEntryResponse(BaseModel):
    id: str
    amount: int
    reason: str
    source: str
    transaction_id: Optional[str] = None
    monthly_credits_used_after: int
    addon_credits_balance_after: int
    created_at: datetime


class CreditLedgerPageResponse(BaseModel):
    entries: list[CreditLedgerEntryResponse]
    total: int
    limit: int
    offset: int


class PriceMappingRequest(BaseModel):
    price_id: str


class PriceMappingResponse(BaseModel):
    key: str
    price_id: str
