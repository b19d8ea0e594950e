from __future__ import annotations

import logging
from typing import Optional

from ..db.base import BaseDBManager, DuplicateKeyError
from ..errors import AccountResolutionError
from ..logging.credit_ledger import CreditLedger
from ..models.base import PaginatedResult
from ..models.billing import BillingAccount, BillingStatus, PlanKey
from ..models.ledger import addon_idempotency_key
from .account_resolver import BillingAccountResolver


logger = logging.getLogger(__name__)


class CreditService:
    """
    Add-on credit application and read access to balances and history.

    Add-on credits persist across billing periods and can exist without a
    subscription, so an account is created on the first purchase if needed.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: CreditLedger,
        resolver: Optional[BillingAccountResolver] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._resolver = resolver or BillingAccountResolver(db)

    async def add_credits(
        self,
        customer_id: str,
        amount: int,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
    ) -> str:
        """
        Credit `amount` add-on credits and return the billing account id.

        With an `event_id`, a repeated call for the same provider event is a
        no-op that returns the account credited the first time.

        The ledger entry claims the idempotency key before the balance moves,
        and the balance moves by an atomic increment. A caller that loses the
        race for the key therefore never touches the balance, with or without
        backend transactions.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        idempotency_key = addon_idempotency_key(event_id) if event_id else None
        if idempotency_key:
            existing = await self._ledger.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info("Add-on credits for event %s already applied", event_id)
                return existing.billing_account_id

        try:
            async with self._db.transaction():
                account = await self._resolver.resolve_for_customer(customer_id, user_id)
                if account is None:
                    if not user_id:
                        raise AccountResolutionError(
                            f"Unable to map add-on payment from customer {customer_id} to a user"
                        )
                    account = await self._db.add_billing_account(
                        BillingAccount(
                            user_id=user_id,
                            customer_id=customer_id,
                            plan_key=PlanKey.NONE,
                            status=BillingStatus.NONE,
                        )
                    )

                entry = await self._ledger.record_addon_purchase(
                    account,
                    amount,
                    idempotency_key=idempotency_key,
                    checkout_session_id=checkout_session_id,
                )
                account = await self._db.increment_addon_credits(account.id, amount)  # type: ignore[arg-type]
        except DuplicateKeyError as exc:
            # Lost a race with a concurrent delivery of the same event before
            # any credit was applied; report the winner's effect.
            if idempotency_key is None or exc.field != "idempotency_key":
                raise
            winner = await self._ledger.find_by_idempotency_key(idempotency_key)
            if winner is None:
                raise
            return winner.billing_account_id

        self._ledger.mirror([entry])
        logger.info(
            "Added %d add-on credits to account %s (balance %d)",
            amount,
            account.id,
            account.addon_credits_balance,
        )
        return account.id  # type: ignore[return-value]

    async def get_account(self, user_id: str) -> Optional[BillingAccount]:
        return await self._db.get_billing_account_by_user(user_id)

    async def get_credit_history(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> PaginatedResult:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if offset < 0:
            raise ValueError("offset must not be negative")
        return await self._ledger.history(user_id, limit=limit, offset=offset)
