"""
Translation of Stripe webhook events into provider-agnostic facts.

Only this module knows Stripe payload shapes. Subscription-bearing events
may need an outbound lookup of the subscription; fee lookups are
best-effort and fall back to the estimate.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from ..errors import UnmappableEventError
from ..models.billing import PlanKey
from ..models.facts import (
    AddonPurchaseFact,
    Fact,
    PaymentFailedFact,
    RevenueFact,
    SubscriptionFact,
)
from ..models.revenue import RevenueSource
from ..providers.base import ProviderClient
from ..services.account_resolver import BillingAccountResolver
from ..services.price_resolver import PriceResolver


logger = logging.getLogger(__name__)

EventHandler = Callable[[Mapping[str, Any]], Awaitable[List[Fact]]]


def extract_object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        object_id = value.get("id")
        return object_id if isinstance(object_id, str) else None
    return None


def extract_invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription_id = extract_object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest the subscription under the invoice parent.
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return extract_object_id(details.get("subscription"))


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def to_ms(seconds: Any) -> Optional[int]:
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds <= 0:
        return None
    return int(seconds) * 1000


def resolve_period_bounds(subscription: Mapping[str, Any]) -> Tuple[Optional[int], Optional[int]]:
    """
    Current period bounds in ms epoch. Recent API versions moved them from
    the subscription root to the subscription item, so both are checked.
    """
    item = _first_item(subscription)
    start = item.get("current_period_start") or subscription.get("current_period_start")
    end = item.get("current_period_end") or subscription.get("current_period_end")
    return to_ms(start), to_ms(end)


def first_item_price(subscription: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Price id and, when expanded, product name of the first item."""
    price = _first_item(subscription).get("price") or {}
    if not isinstance(price, Mapping):
        return extract_object_id(price), None
    product = price.get("product")
    product_name = product.get("name") if isinstance(product, Mapping) else None
    return extract_object_id(price.get("id")), product_name


def _parse_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class EventTranslator:
    def __init__(
        self,
        provider: ProviderClient,
        prices: PriceResolver,
        accounts: BillingAccountResolver,
        user_metadata_key: str = "user_id",
        addon_credits_metadata_key: str = "addon_credits",
        default_currency: str = "USD",
    ) -> None:
        self._provider = provider
        self._prices = prices
        self._accounts = accounts
        self._user_metadata_key = user_metadata_key
        self._addon_credits_metadata_key = addon_credits_metadata_key
        self._default_currency = default_currency
        self._handlers: Dict[str, EventHandler] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_changed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_changed,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_failed": self._invoice_payment_failed,
        }

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def translate(self, event: Mapping[str, Any]) -> List[Fact]:
        handler = self._handlers.get(event.get("type") or "")
        if handler is None:
            logger.debug("Ignoring unhandled event type %s", event.get("type"))
            return []
        return await handler(event)

    # Event handlers
    async def _checkout_completed(self, event: Mapping[str, Any]) -> List[Fact]:
        session = event["data"]["object"]
        customer_id = extract_object_id(session.get("customer"))
        if not customer_id:
            return []

        user_id = self._user_id(session.get("metadata"))
        mode = session.get("mode")

        if mode == "subscription":
            subscription_id = extract_object_id(session.get("subscription"))
            if not subscription_id:
                return []
            subscription = await self._provider.retrieve_subscription(subscription_id)
            return [await self._subscription_fact(subscription, customer_id, user_id)]

        if mode != "payment":
            return []

        facts: List[Fact] = []
        credits = _parse_int((session.get("metadata") or {}).get(self._addon_credits_metadata_key))
        if credits > 0:
            facts.append(
                AddonPurchaseFact(
                    customer_id=customer_id,
                    user_id=user_id,
                    credits=credits,
                    event_id=event["id"],
                    checkout_session_id=session.get("id"),
                )
            )

        amount = _parse_int(session.get("amount_total"))
        if amount > 0:
            actual_fee = await self._lookup_fee(
                self._provider.payment_intent_fee,
                extract_object_id(session.get("payment_intent")),
            )
            facts.append(
                RevenueFact(
                    event_id=event["id"],
                    object_id=session.get("id"),
                    user_id=user_id,
                    customer_id=customer_id,
                    source=RevenueSource.ADDON_CHECKOUT,
                    amount=amount,
                    currency=self._currency(session.get("currency")),
                    occurred_at=self._occurred_at(session, event),
                    actual_fee=actual_fee,
                )
            )
        return facts

    async def _subscription_changed(self, event: Mapping[str, Any]) -> List[Fact]:
        subscription = event["data"]["object"]
        customer_id = extract_object_id(subscription.get("customer"))
        if not customer_id:
            return []
        status = "canceled" if event["type"] == "customer.subscription.deleted" else None
        fact = await self._subscription_fact(
            subscription,
            customer_id,
            self._user_id(subscription.get("metadata")),
            status=status,
        )
        return [fact]

    async def _invoice_paid(self, event: Mapping[str, Any]) -> List[Fact]:
        invoice = event["data"]["object"]
        subscription_id = extract_invoice_subscription_id(invoice)
        if not subscription_id:
            return []

        subscription = await self._provider.retrieve_subscription(subscription_id)
        customer_id = extract_object_id(subscription.get("customer")) or extract_object_id(
            invoice.get("customer")
        )
        if not customer_id:
            return []

        parent_metadata = (
            ((invoice.get("parent") or {}).get("subscription_details") or {}).get("metadata")
        )
        user_id = self._user_id(subscription.get("metadata")) or self._user_id(parent_metadata)
        facts: List[Fact] = [await self._subscription_fact(subscription, customer_id, user_id)]

        amount_paid = _parse_int(invoice.get("amount_paid"))
        if amount_paid > 0:
            actual_fee = await self._lookup_fee(
                self._provider.charge_fee, extract_object_id(invoice.get("charge"))
            )
            facts.append(
                RevenueFact(
                    event_id=event["id"],
                    object_id=invoice.get("id"),
                    user_id=user_id,
                    customer_id=customer_id,
                    source=RevenueSource.SUBSCRIPTION_INVOICE,
                    amount=amount_paid,
                    currency=self._currency(invoice.get("currency")),
                    occurred_at=self._occurred_at(invoice, event),
                    actual_fee=actual_fee,
                )
            )
        return facts

    async def _invoice_payment_failed(self, event: Mapping[str, Any]) -> List[Fact]:
        customer_id = extract_object_id(event["data"]["object"].get("customer"))
        if not customer_id:
            return []
        return [PaymentFailedFact(customer_id=customer_id)]

    # Helpers
    async def _subscription_fact(
        self,
        subscription: Mapping[str, Any],
        customer_id: str,
        user_id: Optional[str],
        status: Optional[str] = None,
    ) -> SubscriptionFact:
        subscription_id = subscription.get("id")
        price_id, product_name = first_item_price(subscription)
        plan_key = await self._prices.plan_key_for_price(price_id, product_name)

        if plan_key is None:
            # Keep the plan already on file rather than drop the event.
            existing = await self._accounts.resolve(
                subscription_id=subscription_id, customer_id=customer_id
            )
            if existing is not None and existing.plan_key != PlanKey.NONE:
                logger.warning(
                    "Unknown price %s on subscription %s; keeping plan %s",
                    price_id,
                    subscription_id,
                    existing.plan_key.value,
                )
                plan_key = existing.plan_key

        if plan_key is None:
            raise UnmappableEventError(f"Unknown subscription price ID {price_id}")

        period_start, period_end = resolve_period_bounds(subscription)
        return SubscriptionFact(
            user_id=user_id or self._user_id(subscription.get("metadata")),
            customer_id=customer_id,
            subscription_id=subscription_id,
            plan_key=plan_key,
            provider_status=status or subscription.get("status") or "",
            period_start=period_start,
            period_end=period_end,
        )

    def _user_id(self, metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
        if not metadata:
            return None
        value = metadata.get(self._user_metadata_key)
        return value if isinstance(value, str) and value else None

    def _currency(self, currency: Any) -> str:
        return currency.upper() if isinstance(currency, str) and currency else self._default_currency

    @staticmethod
    def _occurred_at(obj: Mapping[str, Any], event: Mapping[str, Any]) -> int:
        return to_ms(obj.get("created")) or to_ms(event.get("created")) or int(time.time() * 1000)

    @staticmethod
    async def _lookup_fee(
        lookup: Callable[[str], Awaitable[Optional[int]]], object_id: Optional[str]
    ) -> Optional[int]:
        if not object_id:
            return None
        try:
            return await lookup(object_id)
        except Exception as exc:
            logger.warning("Fee lookup for %s failed, using estimate: %s", object_id, exc)
            return None
