from __future__ import annotations

import logging
from typing import List, Mapping, Optional

from ..db.base import BaseDBManager
from ..errors import AccountResolutionError
from ..logging.credit_ledger import CreditLedger
from ..models.base import utcnow
from ..models.billing import (
    DEFAULT_PLAN_MONTHLY_CREDITS,
    BillingAccount,
    BillingStatus,
    PlanKey,
    map_provider_status,
    plan_rank,
)
from ..models.facts import SubscriptionFact
from ..models.ledger import CreditLedgerEntry
from .account_resolver import BillingAccountResolver
from .notification_service import NotificationService


logger = logging.getLogger(__name__)


class Reconciler:
    """
    Applies subscription facts to billing accounts.

    Applying a fact is "make the account reflect this fact", so applying
    the same fact twice is harmless. A new billing cycle is recognised only
    by a change in the provider-reported period start; the reconciler never
    resets usage on its own schedule.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: CreditLedger,
        resolver: Optional[BillingAccountResolver] = None,
        notifications: Optional[NotificationService] = None,
        plan_monthly_credits: Optional[Mapping[PlanKey, int]] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._resolver = resolver or BillingAccountResolver(db)
        self._notifications = notifications
        self._plan_monthly_credits = dict(plan_monthly_credits or DEFAULT_PLAN_MONTHLY_CREDITS)

    def monthly_credit_limit(self, plan_key: PlanKey) -> int:
        return self._plan_monthly_credits.get(plan_key, 0)

    async def upsert_from_subscription_fact(self, fact: SubscriptionFact) -> str:
        status = map_provider_status(fact.provider_status)
        monthly_limit = self.monthly_credit_limit(fact.plan_key)
        entries: List[CreditLedgerEntry] = []
        newly_canceled = False

        async with self._db.transaction():
            existing = await self._resolver.resolve(
                subscription_id=fact.subscription_id,
                customer_id=fact.customer_id,
                user_id=fact.user_id,
            )

            if existing is None:
                if not fact.user_id:
                    raise AccountResolutionError(
                        f"Unable to map customer {fact.customer_id} / subscription "
                        f"{fact.subscription_id} to a user"
                    )
                account = await self._db.add_billing_account(
                    BillingAccount(
                        user_id=fact.user_id,
                        customer_id=fact.customer_id,
                        subscription_id=fact.subscription_id,
                        plan_key=fact.plan_key,
                        status=status,
                        current_period_start=fact.period_start,
                        current_period_end=fact.period_end,
                        monthly_credit_limit=monthly_limit,
                    )
                )
                logger.info(
                    "Created billing account %s for user %s on plan %s (%s)",
                    account.id,
                    account.user_id,
                    fact.plan_key.value,
                    status.value,
                )
                return account.id  # type: ignore[return-value]

            account = existing
            rollover = (
                fact.period_start is not None
                and account.current_period_start != fact.period_start
            )

            carry_over = 0
            if rollover and plan_rank(fact.plan_key) > plan_rank(account.plan_key):
                carry_over = account.monthly_credits_remaining

            newly_canceled = (
                status == BillingStatus.CANCELED and account.status != BillingStatus.CANCELED
            )
            previous_plan = account.plan_key

            account.customer_id = fact.customer_id
            account.subscription_id = fact.subscription_id
            account.plan_key = fact.plan_key
            account.status = status
            if fact.period_start is not None:
                account.current_period_start = fact.period_start
            if fact.period_end is not None:
                account.current_period_end = fact.period_end
            account.monthly_credit_limit = monthly_limit
            if rollover:
                account.monthly_credits_used = 0
                account.addon_credits_balance += carry_over
            account.updated_at = utcnow()

            await self._db.update_billing_account(account)

            if rollover:
                entries = await self._ledger.record_rollover(account, carry_over)
                logger.info(
                    "Billing period rollover for account %s: %s -> %s, carried over %d credits",
                    account.id,
                    previous_plan.value,
                    fact.plan_key.value,
                    carry_over,
                )

        self._ledger.mirror(entries)
        if newly_canceled and self._notifications is not None:
            self._notifications.notify_subscription_canceled(account.user_id)
        return account.id  # type: ignore[return-value]

    async def mark_past_due(self, customer_id: str) -> Optional[str]:
        """
        Flag the customer's account as past due after a failed payment.
        Returns the account id, or None when the customer has no account yet.
        """
        async with self._db.transaction():
            account = await self._db.get_billing_account_by_customer(customer_id)
            if account is None:
                logger.info("Payment failed for unknown customer %s; nothing to update", customer_id)
                return None
            account.status = BillingStatus.PAST_DUE
            account.updated_at = utcnow()
            await self._db.update_billing_account(account)

        if self._notifications is not None:
            self._notifications.notify_payment_failed(account.user_id)
        return account.id
