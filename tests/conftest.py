from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from billing_ledger.db.memory import InMemoryDBManager
from billing_ledger.logging.credit_ledger import CreditLedger
from billing_ledger.notifications.queue import InMemoryNotificationQueue
from billing_ledger.providers.base import ProviderClient
from billing_ledger.services.account_resolver import BillingAccountResolver
from billing_ledger.services.credit_service import CreditService
from billing_ledger.services.idempotency import IdempotencyGuard
from billing_ledger.services.notification_service import NotificationService
from billing_ledger.services.price_resolver import PriceResolver
from billing_ledger.services.reconciler import Reconciler
from billing_ledger.services.revenue_service import RevenueService
from billing_ledger.webhooks.processor import WebhookProcessor
from billing_ledger.webhooks.translator import EventTranslator


PRICE_IDS = {
    "starter": "price_starter",
    "growth": "price_growth",
    "dominant": "price_dominant",
}


class FakeProviderClient(ProviderClient):
    """Serves canned subscriptions and fees instead of calling Stripe."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Mapping[str, Any]] = {}
        self.charge_fees: Dict[str, int] = {}
        self.intent_fees: Dict[str, int] = {}
        self.fail_fee_lookups = False

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        return self.subscriptions[subscription_id]

    async def charge_fee(self, charge_id: str) -> Optional[int]:
        if self.fail_fee_lookups:
            raise ConnectionError("provider unavailable")
        return self.charge_fees.get(charge_id)

    async def payment_intent_fee(self, payment_intent_id: str) -> Optional[int]:
        if self.fail_fee_lookups:
            raise ConnectionError("provider unavailable")
        return self.intent_fees.get(payment_intent_id)


def subscription_object(
    subscription_id: str,
    customer_id: str,
    price_id: str,
    period_start: int,
    period_end: int,
    status: str = "active",
    user_id: Optional[str] = None,
    product_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Subscription shaped like the Stripe API, period bounds on the item."""
    price: Dict[str, Any] = {"id": price_id}
    if product_name is not None:
        price["product"] = {"id": "prod_1", "name": product_name}
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {
            "data": [
                {
                    "price": price,
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ]
        },
    }


def event(event_id: str, event_type: str, obj: Mapping[str, Any], created: int = 1_700_000_000) -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": dict(obj)},
    }


class Harness:
    """Wires the full pipeline over in-memory backends."""

    def __init__(
        self,
        tmp_path,
        provider: Optional[ProviderClient] = None,
        db: Optional[InMemoryDBManager] = None,
    ) -> None:
        self.db = db or InMemoryDBManager()
        self.ledger = CreditLedger(db=self.db, file_path=tmp_path / "credit_ledger.log")
        self.queue = InMemoryNotificationQueue()
        self.notifications = NotificationService(db=self.db, queue=self.queue)
        self.accounts = BillingAccountResolver(self.db)
        self.prices = PriceResolver(db=self.db, static_prices=PRICE_IDS)
        self.reconciler = Reconciler(
            db=self.db,
            ledger=self.ledger,
            resolver=self.accounts,
            notifications=self.notifications,
        )
        self.credits = CreditService(db=self.db, ledger=self.ledger, resolver=self.accounts)
        self.revenue = RevenueService(db=self.db)
        self.provider = provider or FakeProviderClient()
        self.translator = EventTranslator(
            provider=self.provider, prices=self.prices, accounts=self.accounts
        )
        self.guard = IdempotencyGuard(self.db)
        self.processor = WebhookProcessor(
            guard=self.guard,
            translator=self.translator,
            reconciler=self.reconciler,
            credits=self.credits,
            revenue=self.revenue,
            accounts=self.accounts,
        )

    async def ledger_entries(self, user_id: str) -> List[Any]:
        page = await self.ledger.history(user_id, limit=100)
        return list(page.items)


class InterleavingDB(InMemoryDBManager):
    """
    Yields to the event loop after each idempotency lookup, so concurrent
    deliveries of one event all pass their existence checks before any of
    them writes.
    """

    async def get_webhook_event(self, event_id):
        record = await super().get_webhook_event(event_id)
        await asyncio.sleep(0)
        return record

    async def get_credit_ledger_entry_by_idempotency_key(self, idempotency_key):
        entry = await super().get_credit_ledger_entry_by_idempotency_key(idempotency_key)
        await asyncio.sleep(0)
        return entry

    async def get_revenue_event_by_event_id(self, event_id):
        event = await super().get_revenue_event_by_event_id(event_id)
        await asyncio.sleep(0)
        return event


class NoRollbackDB(InterleavingDB):
    """Behaves like a document store without multi-document transactions."""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        yield
