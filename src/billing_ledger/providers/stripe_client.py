from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from .base import ProviderClient


logger = logging.getLogger(__name__)


def _to_plain(obj: stripe.StripeObject) -> Dict[str, Any]:
    # SDK objects are not Mappings; everything past this client reads plain dicts.
    return obj.to_dict()


def _fee_from_balance_transaction(balance_transaction: Any) -> Optional[int]:
    # Unexpanded balance transactions are plain id strings.
    if isinstance(balance_transaction, Mapping):
        fee = balance_transaction.get("fee")
        if isinstance(fee, int):
            return fee
    return None


class StripeProviderClient(ProviderClient):
    """
    `ProviderClient` backed by the Stripe Python SDK.

    The SDK is synchronous, so calls run in a worker thread to keep the
    event loop free while the provider responds. Results are converted to
    plain nested dicts before they leave this class.
    """

    def __init__(self, api_key: Optional[str]) -> None:
        self._api_key = api_key

    def _require_key(self) -> str:
        if not self._api_key:
            raise RuntimeError("Stripe secret key is not configured")
        return self._api_key

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        api_key = self._require_key()
        subscription = await asyncio.to_thread(
            stripe.Subscription.retrieve,
            subscription_id,
            api_key=api_key,
            expand=["items.data.price.product"],
        )
        return _to_plain(subscription)

    async def charge_fee(self, charge_id: str) -> Optional[int]:
        api_key = self._require_key()
        charge = await asyncio.to_thread(
            stripe.Charge.retrieve,
            charge_id,
            api_key=api_key,
            expand=["balance_transaction"],
        )
        return _fee_from_balance_transaction(_to_plain(charge).get("balance_transaction"))

    async def payment_intent_fee(self, payment_intent_id: str) -> Optional[int]:
        api_key = self._require_key()
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
            api_key=api_key,
            expand=["latest_charge.balance_transaction"],
        )
        charge = _to_plain(intent).get("latest_charge")
        if not isinstance(charge, Mapping):
            logger.debug("Payment intent %s has no expanded charge", payment_intent_id)
            return None
        return _fee_from_balance_transaction(charge.get("balance_transaction"))
