from __future__ import annotations

import logging
import re
from typing import Dict, Mapping, Optional, Pattern, Sequence, Tuple

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..models.billing import PlanKey, PriceMapping


logger = logging.getLogger(__name__)

# Ordered; the first pattern matching a product name wins.
DEFAULT_PRODUCT_NAME_PATTERNS: Tuple[Tuple[Pattern[str], PlanKey], ...] = (
    (re.compile(r"starter", re.IGNORECASE), PlanKey.STARTER),
    (re.compile(r"growth", re.IGNORECASE), PlanKey.GROWTH),
    (re.compile(r"dominant", re.IGNORECASE), PlanKey.DOMINANT),
)

_SUBSCRIPTION_PLANS = frozenset(p for p in PlanKey if p is not PlanKey.NONE)


def infer_plan_key(
    product_name: Optional[str],
    patterns: Sequence[Tuple[Pattern[str], PlanKey]] = DEFAULT_PRODUCT_NAME_PATTERNS,
) -> Optional[PlanKey]:
    """Best-effort plan guess from a product display name."""
    if not product_name:
        return None
    for pattern, plan_key in patterns:
        if pattern.search(product_name):
            return plan_key
    return None


class PriceResolver:
    """
    Maps provider price ids to internal plan keys.

    The catalogue is the static mapping from configuration overlaid by the
    `PriceMapping` rows in the database. Explicit mappings always win over
    product-name inference.
    """

    CACHE_KEY = "billing:price_map"

    def __init__(
        self,
        db: BaseDBManager,
        cache: Optional[AsyncCacheBackend] = None,
        static_prices: Optional[Mapping[str, str]] = None,
        infer_from_product_name: bool = True,
        name_patterns: Sequence[Tuple[Pattern[str], PlanKey]] = DEFAULT_PRODUCT_NAME_PATTERNS,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._cache = cache
        self._static_prices = dict(static_prices or {})
        self._infer_from_product_name = infer_from_product_name
        self._name_patterns = tuple(name_patterns)
        self._cache_ttl_seconds = cache_ttl_seconds

    async def get_price_map(self) -> Dict[str, str]:
        """Catalogue key -> provider price id."""
        if self._cache:
            cached = await self._cache.get(self.CACHE_KEY)
            if isinstance(cached, dict):
                return dict(cached)

        prices = dict(self._static_prices)
        for mapping in await self._db.get_price_mappings():
            prices[mapping.key] = mapping.price_id

        if self._cache:
            await self._cache.set(self.CACHE_KEY, prices, ttl_seconds=self._cache_ttl_seconds)
        return prices

    async def plan_key_for_price(
        self, price_id: Optional[str], product_name: Optional[str] = None
    ) -> Optional[PlanKey]:
        if price_id:
            plan_key = self._match_price(await self.get_price_map(), price_id)
            if plan_key is not None:
                return plan_key

        if self._infer_from_product_name:
            plan_key = infer_plan_key(product_name, self._name_patterns)
            if plan_key is not None:
                logger.info(
                    "Inferred plan %s for unmapped price %s from product name %r",
                    plan_key.value,
                    price_id,
                    product_name,
                )
                return plan_key
        return None

    async def price_for_plan_key(self, plan_key: PlanKey | str) -> Optional[str]:
        return (await self.get_price_map()).get(PlanKey(plan_key).value)

    async def set_price_mapping(self, key: str, price_id: str) -> PriceMapping:
        mapping = await self._db.upsert_price_mapping(PriceMapping(key=key, price_id=price_id))
        if self._cache:
            await self._cache.delete(self.CACHE_KEY)
        return mapping

    @staticmethod
    def _match_price(prices: Mapping[str, str], price_id: str) -> Optional[PlanKey]:
        for key, mapped_price_id in prices.items():
            if mapped_price_id != price_id:
                continue
            try:
                plan_key = PlanKey(key)
            except ValueError:
                continue
            if plan_key in _SUBSCRIPTION_PLANS:
                return plan_key
        return None
