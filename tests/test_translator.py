from __future__ import annotations

import pytest

from billing_ledger.errors import UnmappableEventError
from billing_ledger.models.billing import PlanKey
from billing_ledger.models.facts import AddonPurchaseFact, PaymentFailedFact, RevenueFact, SubscriptionFact
from billing_ledger.webhooks.translator import (
    extract_invoice_subscription_id,
    first_item_price,
    resolve_period_bounds,
)

from conftest import Harness, event, subscription_object


def test_period_bounds_prefer_item_over_root():
    sub = {
        "current_period_start": 100,
        "current_period_end": 200,
        "items": {"data": [{"current_period_start": 300, "current_period_end": 400}]},
    }
    assert resolve_period_bounds(sub) == (300_000, 400_000)

    legacy = {"current_period_start": 100, "current_period_end": 200, "items": {"data": []}}
    assert resolve_period_bounds(legacy) == (100_000, 200_000)
    assert resolve_period_bounds({}) == (None, None)


def test_invoice_subscription_id_from_parent_details():
    assert extract_invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"
    assert extract_invoice_subscription_id({"subscription": {"id": "sub_2"}}) == "sub_2"
    nested = {"parent": {"subscription_details": {"subscription": "sub_3"}}}
    assert extract_invoice_subscription_id(nested) == "sub_3"
    assert extract_invoice_subscription_id({}) is None


def test_first_item_price_with_expanded_product():
    sub = subscription_object("sub_1", "cus_1", "price_x", 1, 2, product_name="Growth Monthly")
    assert first_item_price(sub) == ("price_x", "Growth Monthly")
    assert first_item_price({"items": {"data": [{"price": "price_y"}]}}) == ("price_y", None)


@pytest.mark.asyncio
async def test_subscription_plan_inferred_from_product_name(tmp_path):
    h = Harness(tmp_path)
    sub = subscription_object("sub_1", "cus_1", "price_new", 10, 20, user_id="user-1", product_name="Dominant")

    facts = await h.translator.translate(event("evt_1", "customer.subscription.updated", sub))

    assert len(facts) == 1
    fact = facts[0]
    assert isinstance(fact, SubscriptionFact)
    assert fact.plan_key == PlanKey.DOMINANT
    assert fact.user_id == "user-1"
    assert fact.period_start == 10_000


@pytest.mark.asyncio
async def test_unmapped_price_without_account_raises(tmp_path):
    h = Harness(tmp_path)
    sub = subscription_object("sub_1", "cus_1", "price_new", 10, 20, user_id="user-1")
    with pytest.raises(UnmappableEventError):
        await h.translator.translate(event("evt_1", "customer.subscription.updated", sub))


@pytest.mark.asyncio
async def test_payment_checkout_without_credits_only_records_revenue(tmp_path):
    h = Harness(tmp_path)
    session = {
        "id": "cs_1",
        "mode": "payment",
        "customer": "cus_1",
        "amount_total": 700,
        "metadata": {"user_id": "user-1", "addon_credits": "not-a-number"},
    }

    facts = await h.translator.translate(event("evt_1", "checkout.session.completed", session))

    assert [type(f) for f in facts] == [RevenueFact]
    assert facts[0].currency == "USD"
    assert facts[0].occurred_at == 1_700_000_000_000


@pytest.mark.asyncio
async def test_payment_checkout_with_credits(tmp_path):
    h = Harness(tmp_path)
    session = {
        "id": "cs_1",
        "mode": "payment",
        "customer": {"id": "cus_1"},
        "metadata": {"addon_credits": "40"},
    }

    facts = await h.translator.translate(event("evt_1", "checkout.session.completed", session))

    assert len(facts) == 1
    fact = facts[0]
    assert isinstance(fact, AddonPurchaseFact)
    assert fact.customer_id == "cus_1"
    assert fact.credits == 40
    assert fact.event_id == "evt_1"


@pytest.mark.asyncio
async def test_events_without_customer_yield_nothing(tmp_path):
    h = Harness(tmp_path)
    assert await h.translator.translate(event("evt_1", "invoice.payment_failed", {"id": "in_1"})) == []
    assert await h.translator.translate(
        event("evt_2", "checkout.session.completed", {"id": "cs_1", "mode": "setup", "customer": "cus_1"})
    ) == []


@pytest.mark.asyncio
async def test_payment_failed_fact(tmp_path):
    h = Harness(tmp_path)
    facts = await h.translator.translate(
        event("evt_1", "invoice.payment_failed", {"id": "in_1", "customer": "cus_1"})
    )
    assert facts == [PaymentFailedFact(customer_id="cus_1")]
    assert h.translator.handles("invoice.payment_failed")
    assert not h.translator.handles("customer.created")
