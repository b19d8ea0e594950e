from __future__ import annotations

import pytest

from billing_ledger.cache.memory import InMemoryAsyncCache
from billing_ledger.db.memory import InMemoryDBManager
from billing_ledger.models.billing import PlanKey
from billing_ledger.services.price_resolver import PriceResolver, infer_plan_key


@pytest.mark.asyncio
async def test_explicit_mapping_wins_over_product_name():
    db = InMemoryDBManager()
    resolver = PriceResolver(db=db, static_prices={"growth": "price_g"})

    # The product name says "starter" but the price is mapped to growth.
    assert await resolver.plan_key_for_price("price_g", "Starter plan") == PlanKey.GROWTH


@pytest.mark.asyncio
async def test_product_name_inference_for_unmapped_price():
    resolver = PriceResolver(db=InMemoryDBManager())

    assert await resolver.plan_key_for_price("price_x", "Dominant (monthly)") == PlanKey.DOMINANT
    assert await resolver.plan_key_for_price("price_x", "Enterprise") is None
    assert await resolver.plan_key_for_price(None, None) is None


@pytest.mark.asyncio
async def test_inference_can_be_disabled():
    resolver = PriceResolver(db=InMemoryDBManager(), infer_from_product_name=False)
    assert await resolver.plan_key_for_price("price_x", "Growth") is None


@pytest.mark.asyncio
async def test_none_key_is_never_a_subscription_plan():
    resolver = PriceResolver(db=InMemoryDBManager(), static_prices={"none": "price_free"})
    assert await resolver.plan_key_for_price("price_free") is None


@pytest.mark.asyncio
async def test_set_price_mapping_invalidates_cache():
    db = InMemoryDBManager()
    cache = InMemoryAsyncCache()
    resolver = PriceResolver(db=db, cache=cache, static_prices={"starter": "price_old"})

    assert await resolver.price_for_plan_key(PlanKey.STARTER) == "price_old"
    assert await cache.get(PriceResolver.CACHE_KEY) is not None

    await resolver.set_price_mapping("starter", "price_new")
    assert await cache.get(PriceResolver.CACHE_KEY) is None
    assert await resolver.price_for_plan_key("starter") == "price_new"
    assert await resolver.plan_key_for_price("price_new") == PlanKey.STARTER
    assert await resolver.plan_key_for_price("price_old") is None


def test_infer_plan_key_is_case_insensitive():
    assert infer_plan_key("STARTER") == PlanKey.STARTER
    assert infer_plan_key("my growth bundle") == PlanKey.GROWTH
    assert infer_plan_key("") is None
