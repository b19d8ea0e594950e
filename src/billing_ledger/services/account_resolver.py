from __future__ import annotations

import logging
from typing import Optional

from ..db.base import BaseDBManager
from ..models.billing import BillingAccount


logger = logging.getLogger(__name__)


class BillingAccountResolver:
    """
    Finds the billing account an event refers to.

    Early lifecycle events can arrive before the subscription id or
    customer id has been linked, so lookups fall back through weaker keys:
    subscription id, then customer id, then user id.
    """

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def resolve(
        self,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[BillingAccount]:
        if subscription_id:
            account = await self._db.get_billing_account_by_subscription(subscription_id)
            if account is not None:
                return account
        if customer_id:
            account = await self._db.get_billing_account_by_customer(customer_id)
            if account is not None:
                logger.debug(
                    "Resolved billing account %s by customer %s", account.id, customer_id
                )
                return account
        if user_id:
            account = await self._db.get_billing_account_by_user(user_id)
            if account is not None:
                logger.debug("Resolved billing account %s by user %s", account.id, user_id)
                return account
        return None

    async def resolve_for_customer(
        self, customer_id: Optional[str], user_id: Optional[str] = None
    ) -> Optional[BillingAccount]:
        """Lookup for one-off payments, which carry no subscription id."""
        return await self.resolve(customer_id=customer_id, user_id=user_id)
