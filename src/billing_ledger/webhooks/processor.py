from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Type

from ..models.facts import (
    AddonPurchaseFact,
    Fact,
    PaymentFailedFact,
    RevenueFact,
    SubscriptionFact,
)
from ..services.account_resolver import BillingAccountResolver
from ..services.credit_service import CreditService
from ..services.idempotency import IdempotencyGuard
from ..services.reconciler import Reconciler
from ..services.revenue_service import RevenueService
from .translator import EventTranslator


logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


class WebhookProcessor:
    """
    Runs one provider event through the reconciliation pipeline:
    idempotency guard, translation into facts, one handler per fact.

    Each fact commits in its own transaction. Any failure marks the event
    failed and re-raises; a redelivery then re-applies every fact, which
    the handlers tolerate because each of them is idempotent.
    """

    def __init__(
        self,
        guard: IdempotencyGuard,
        translator: EventTranslator,
        reconciler: Reconciler,
        credits: CreditService,
        revenue: RevenueService,
        accounts: BillingAccountResolver,
    ) -> None:
        self._guard = guard
        self._translator = translator
        self._reconciler = reconciler
        self._credits = credits
        self._revenue = revenue
        self._accounts = accounts
        self._fact_handlers: Dict[Type[Any], Callable[[Any], Awaitable[Optional[str]]]] = {
            SubscriptionFact: self._apply_subscription,
            AddonPurchaseFact: self._apply_addon_purchase,
            RevenueFact: self._apply_revenue,
            PaymentFailedFact: self._apply_payment_failed,
        }

    async def process(self, event: Mapping[str, Any]) -> WebhookOutcome:
        event_id = event.get("id")
        event_type = event.get("type") or "unknown"
        if not event_id:
            raise ValueError("webhook event has no id")

        if not await self._guard.begin(event_id, event_type):
            logger.info("Webhook event %s (%s) already handled", event_id, event_type)
            return WebhookOutcome.DUPLICATE

        logger.info("Processing webhook event %s (%s)", event_type, event_id)
        try:
            facts = await self._translator.translate(event)
            for fact in facts:
                await self.apply(fact)
        except Exception as exc:
            logger.exception(
                "Error processing webhook event %s (%s)",
                event_type,
                event_id,
                extra={"event_id": event_id, "event_type": event_type},
            )
            await self._record_failure(event_id, exc)
            raise

        await self._guard.complete(event_id)
        return WebhookOutcome.PROCESSED if facts else WebhookOutcome.IGNORED

    async def apply(self, fact: Fact) -> Optional[str]:
        handler = self._fact_handlers[type(fact)]
        return await handler(fact)

    async def _apply_subscription(self, fact: SubscriptionFact) -> str:
        return await self._reconciler.upsert_from_subscription_fact(fact)

    async def _apply_addon_purchase(self, fact: AddonPurchaseFact) -> str:
        return await self._credits.add_credits(
            customer_id=fact.customer_id,
            amount=fact.credits,
            user_id=fact.user_id,
            event_id=fact.event_id,
            checkout_session_id=fact.checkout_session_id,
        )

    async def _apply_revenue(self, fact: RevenueFact) -> str:
        user_id = fact.user_id
        if user_id is None and fact.customer_id:
            account = await self._accounts.resolve_for_customer(fact.customer_id)
            user_id = account.user_id if account is not None else None
        return await self._revenue.record_revenue(
            event_id=fact.event_id,
            amount=fact.amount,
            currency=fact.currency,
            occurred_at=fact.occurred_at,
            actual_fee=fact.actual_fee,
            source=fact.source,
            object_id=fact.object_id,
            user_id=user_id,
            customer_id=fact.customer_id,
        )

    async def _apply_payment_failed(self, fact: PaymentFailedFact) -> Optional[str]:
        return await self._reconciler.mark_past_due(fact.customer_id)

    async def _record_failure(self, event_id: str, exc: Exception) -> None:
        try:
            await self._guard.fail(event_id, str(exc) or type(exc).__name__)
        except Exception:
            logger.exception("Could not mark webhook event %s as failed", event_id)
