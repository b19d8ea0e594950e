from __future__ import annotations

import json

import pytest

from billing_ledger.db.memory import InMemoryDBManager
from billing_ledger.errors import AccountResolutionError
from billing_ledger.logging.credit_ledger import CreditLedger
from billing_ledger.models.billing import BillingAccount, BillingStatus, PlanKey
from billing_ledger.models.facts import SubscriptionFact
from billing_ledger.models.ledger import LedgerReason, LedgerSource
from billing_ledger.models.notification import NotificationStatus
from billing_ledger.notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from billing_ledger.services.notification_service import NotificationService
from billing_ledger.services.reconciler import Reconciler


PERIOD_1 = 1_700_000_000_000
PERIOD_2 = 1_702_592_000_000
PERIOD_3 = 1_705_184_000_000


def _fact(plan_key=PlanKey.STARTER, period_start=PERIOD_1, period_end=PERIOD_2, status="active", **kwargs):
    values = dict(
        user_id="user-1",
        customer_id="cus_1",
        subscription_id="sub_1",
        plan_key=plan_key,
        provider_status=status,
        period_start=period_start,
        period_end=period_end,
    )
    values.update(kwargs)
    return SubscriptionFact(**values)


async def _use_credits(db, account_id, used):
    account = await db.get_billing_account(account_id)
    account.monthly_credits_used = used
    await db.update_billing_account(account)


class FailingLedgerDB(InMemoryDBManager):
    async def add_credit_ledger_entry(self, entry):
        raise RuntimeError("ledger write failed")


class BrokenQueue(AsyncNotificationQueue):
    async def enqueue(self, payload):
        raise ConnectionError("queue down")


@pytest.mark.asyncio
async def test_creates_account_from_first_fact(tmp_path):
    db = InMemoryDBManager()
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"))

    account_id = await reconciler.upsert_from_subscription_fact(_fact())

    account = await db.get_billing_account(account_id)
    assert account.user_id == "user-1"
    assert account.plan_key == PlanKey.STARTER
    assert account.status == BillingStatus.ACTIVE
    assert account.monthly_credit_limit == 10
    assert account.monthly_credits_used == 0
    assert account.current_period_start == PERIOD_1
    assert account.current_period_end == PERIOD_2


@pytest.mark.asyncio
async def test_upgrade_rollover_carries_unused_credits(tmp_path):
    db = InMemoryDBManager()
    log_path = tmp_path / "ledger.log"
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=log_path))
    account_id = await reconciler.upsert_from_subscription_fact(_fact())
    await _use_credits(db, account_id, 7)

    await reconciler.upsert_from_subscription_fact(
        _fact(plan_key=PlanKey.GROWTH, period_start=PERIOD_2, period_end=PERIOD_3)
    )

    account = await db.get_billing_account(account_id)
    assert account.plan_key == PlanKey.GROWTH
    assert account.monthly_credit_limit == 25
    assert account.monthly_credits_used == 0
    assert account.addon_credits_balance == 3

    page = await db.get_credit_ledger_entries("user-1", limit=10, offset=0)
    assert page.total == 2
    reset = next(e for e in page.items if e.reason == LedgerReason.MONTHLY_RESET)
    carry = next(e for e in page.items if e.reason == LedgerReason.MANUAL_ADJUSTMENT)
    assert reset.amount == 0
    assert reset.source == LedgerSource.SYSTEM
    assert carry.amount == 3
    assert carry.source == LedgerSource.ADDON
    assert carry.addon_credits_balance_after == 3
    assert reset.transaction_id == carry.transaction_id

    lines = log_path.read_text().strip().splitlines()
    assert len(lines) == 2
    assert {json.loads(line)["reason"] for line in lines} == {"monthly_reset", "manual_adjustment"}


@pytest.mark.asyncio
async def test_same_plan_rollover_forfeits_unused_credits(tmp_path):
    db = InMemoryDBManager()
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"))
    account_id = await reconciler.upsert_from_subscription_fact(_fact(plan_key=PlanKey.GROWTH))
    await _use_credits(db, account_id, 5)

    await reconciler.upsert_from_subscription_fact(
        _fact(plan_key=PlanKey.GROWTH, period_start=PERIOD_2, period_end=PERIOD_3)
    )

    account = await db.get_billing_account(account_id)
    assert account.monthly_credits_used == 0
    assert account.addon_credits_balance == 0
    page = await db.get_credit_ledger_entries("user-1", limit=10, offset=0)
    assert [e.reason for e in page.items] == [LedgerReason.MONTHLY_RESET]


@pytest.mark.asyncio
async def test_downgrade_within_period_keeps_usage(tmp_path):
    db = InMemoryDBManager()
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"))
    account_id = await reconciler.upsert_from_subscription_fact(_fact(plan_key=PlanKey.DOMINANT))
    await _use_credits(db, account_id, 20)

    await reconciler.upsert_from_subscription_fact(_fact(plan_key=PlanKey.STARTER))

    account = await db.get_billing_account(account_id)
    assert account.plan_key == PlanKey.STARTER
    assert account.monthly_credit_limit == 10
    assert account.monthly_credits_used == 20
    assert account.monthly_credits_remaining == 0
    assert (await db.get_credit_ledger_entries("user-1", limit=10, offset=0)).total == 0


@pytest.mark.asyncio
async def test_reapplying_a_fact_is_harmless(tmp_path):
    db = InMemoryDBManager()
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"))
    account_id = await reconciler.upsert_from_subscription_fact(_fact())
    await _use_credits(db, account_id, 4)
    upgrade = _fact(plan_key=PlanKey.GROWTH, period_start=PERIOD_2, period_end=PERIOD_3)

    await reconciler.upsert_from_subscription_fact(upgrade)
    await _use_credits(db, account_id, 2)
    await reconciler.upsert_from_subscription_fact(upgrade)

    account = await db.get_billing_account(account_id)
    assert account.monthly_credits_used == 2
    assert account.addon_credits_balance == 6
    assert (await db.get_credit_ledger_entries("user-1", limit=10, offset=0)).total == 2


@pytest.mark.asyncio
async def test_fact_without_period_keeps_stored_bounds(tmp_path):
    db = InMemoryDBManager()
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"))
    account_id = await reconciler.upsert_from_subscription_fact(_fact())

    await reconciler.upsert_from_subscription_fact(
        _fact(period_start=None, period_end=None, status="past_due")
    )

    account = await db.get_billing_account(account_id)
    assert account.status == BillingStatus.PAST_DUE
    assert account.current_period_start == PERIOD_1
    assert account.current_period_end == PERIOD_2


@pytest.mark.asyncio
async def test_unknown_provider_status_maps_to_incomplete(tmp_path):
    db = InMemoryDBManager()
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"))
    account_id = await reconciler.upsert_from_subscription_fact(_fact(status="paused_forever"))
    assert (await db.get_billing_account(account_id)).status == BillingStatus.INCOMPLETE


@pytest.mark.asyncio
async def test_unmappable_fact_raises(tmp_path):
    db = InMemoryDBManager()
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"))

    with pytest.raises(AccountResolutionError):
        await reconciler.upsert_from_subscription_fact(_fact(user_id=None))
    assert await db.get_billing_account_by_customer("cus_1") is None


@pytest.mark.asyncio
async def test_links_subscription_to_account_found_by_user(tmp_path):
    db = InMemoryDBManager()
    existing = await db.add_billing_account(BillingAccount(user_id="user-1", addon_credits_balance=4))
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"))

    account_id = await reconciler.upsert_from_subscription_fact(_fact())

    assert account_id == existing.id
    account = await db.get_billing_account(account_id)
    assert account.subscription_id == "sub_1"
    assert account.customer_id == "cus_1"
    assert account.addon_credits_balance == 4


@pytest.mark.asyncio
async def test_ledger_failure_rolls_back_account_changes(tmp_path):
    db = FailingLedgerDB()
    log_path = tmp_path / "ledger.log"
    reconciler = Reconciler(db=db, ledger=CreditLedger(db=db, file_path=log_path))
    account_id = await reconciler.upsert_from_subscription_fact(_fact())
    await _use_credits(db, account_id, 7)

    with pytest.raises(RuntimeError, match="ledger write failed"):
        await reconciler.upsert_from_subscription_fact(
            _fact(plan_key=PlanKey.GROWTH, period_start=PERIOD_2, period_end=PERIOD_3)
        )

    account = await db.get_billing_account(account_id)
    assert account.plan_key == PlanKey.STARTER
    assert account.monthly_credits_used == 7
    assert account.addon_credits_balance == 0
    assert account.current_period_start == PERIOD_1
    assert not log_path.exists() or log_path.read_text() == ""


@pytest.mark.asyncio
async def test_cancellation_notifies_once(tmp_path):
    db = InMemoryDBManager()
    queue = InMemoryNotificationQueue()
    notifications = NotificationService(db=db, queue=queue)
    reconciler = Reconciler(
        db=db,
        ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"),
        notifications=notifications,
    )
    await reconciler.upsert_from_subscription_fact(_fact())

    await reconciler.upsert_from_subscription_fact(_fact(status="canceled"))
    await reconciler.upsert_from_subscription_fact(_fact(status="canceled"))
    await notifications.drain()

    messages = queue.for_user("user-1")
    assert [m["type"] for m in messages] == ["subscription_canceled"]


@pytest.mark.asyncio
async def test_notification_failure_does_not_break_reconciliation(tmp_path):
    db = InMemoryDBManager()
    notifications = NotificationService(db=db, queue=BrokenQueue())
    reconciler = Reconciler(
        db=db,
        ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"),
        notifications=notifications,
    )
    account_id = await reconciler.upsert_from_subscription_fact(_fact())

    await reconciler.upsert_from_subscription_fact(_fact(status="canceled"))
    await notifications.drain()

    assert (await db.get_billing_account(account_id)).status == BillingStatus.CANCELED
    events = await db.get_notification_events("user-1")
    assert [e.status for e in events] == [NotificationStatus.FAILED]
    assert events[0].error_message == "queue down"


@pytest.mark.asyncio
async def test_mark_past_due(tmp_path):
    db = InMemoryDBManager()
    queue = InMemoryNotificationQueue()
    notifications = NotificationService(db=db, queue=queue)
    reconciler = Reconciler(
        db=db,
        ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"),
        notifications=notifications,
    )
    account_id = await reconciler.upsert_from_subscription_fact(_fact())

    assert await reconciler.mark_past_due("cus_1") == account_id
    assert await reconciler.mark_past_due("cus_unknown") is None
    await notifications.drain()

    assert (await db.get_billing_account(account_id)).status == BillingStatus.PAST_DUE
    assert [m["type"] for m in queue.for_user("user-1")] == ["payment_failed"]


@pytest.mark.asyncio
async def test_custom_plan_quotas(tmp_path):
    db = InMemoryDBManager()
    reconciler = Reconciler(
        db=db,
        ledger=CreditLedger(db=db, file_path=tmp_path / "ledger.log"),
        plan_monthly_credits={PlanKey.STARTER: 100},
    )
    account_id = await reconciler.upsert_from_subscription_fact(_fact())
    assert (await db.get_billing_account(account_id)).monthly_credit_limit == 100
    assert reconciler.monthly_credit_limit(PlanKey.GROWTH) == 0
