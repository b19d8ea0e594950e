from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional


class ProviderClient(ABC):
    """
    Outbound lookups against the payment provider.

    Subscription retrieval is required to reconcile events that only carry
    a subscription id. Fee lookups are best-effort: callers fall back to
    the estimated fee when they fail or return None.
    """

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]: ...

    @abstractmethod
    async def charge_fee(self, charge_id: str) -> Optional[int]: ...

    @abstractmethod
    async def payment_intent_fee(self, payment_intent_id: str) -> Optional[int]: ...
