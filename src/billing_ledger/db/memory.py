from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, TypeVar

from .base import BaseDBManager, DuplicateKeyError
from ..models.base import DBSerializableModel, PaginatedResult, utcnow
from ..models.billing import BillingAccount, PriceMapping
from ..models.ledger import CreditLedgerEntry
from ..models.notification import NotificationEvent
from ..models.revenue import RevenueEvent
from ..models.webhook_event import WebhookEventRecord, WebhookEventStatus


TModel = TypeVar("TModel", bound=DBSerializableModel)

_in_transaction: ContextVar[bool] = ContextVar("billing_memory_in_transaction", default=False)


def _copy(model: Optional[TModel]) -> Optional[TModel]:
    if model is None:
        return None
    return model.model_copy(deep=True)


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Transactions are serialised with a lock and rolled back from a snapshot
    on error. Records are copied on the way in and out so callers can never
    mutate stored state outside of an explicit write.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, BillingAccount] = {}
        self._ledger: List[CreditLedgerEntry] = []
        self._webhook_events: Dict[str, WebhookEventRecord] = {}
        self._revenue: Dict[str, RevenueEvent] = {}
        self._prices: Dict[str, PriceMapping] = {}
        self._notifications: Dict[str, NotificationEvent] = {}
        self._id_counter: int = 0
        self._lock = asyncio.Lock()

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "_accounts": {k: _copy(v) for k, v in self._accounts.items()},
            "_ledger": list(self._ledger),
            "_webhook_events": {k: _copy(v) for k, v in self._webhook_events.items()},
            "_revenue": {k: _copy(v) for k, v in self._revenue.items()},
            "_prices": {k: _copy(v) for k, v in self._prices.items()},
            "_notifications": {k: _copy(v) for k, v in self._notifications.items()},
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # Nested blocks join the outer transaction.
        if _in_transaction.get():
            yield
            return

        async with self._lock:
            snapshot = self._snapshot()
            token = _in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                _in_transaction.reset(token)

    # Billing accounts
    def _check_account_unique(self, account: BillingAccount) -> None:
        for other in self._accounts.values():
            if other.id == account.id:
                continue
            if other.user_id == account.user_id:
                raise DuplicateKeyError(
                    BillingAccount.collection_name, "user_id", account.user_id
                )
            if account.subscription_id and other.subscription_id == account.subscription_id:
                raise DuplicateKeyError(
                    BillingAccount.collection_name, "subscription_id", account.subscription_id
                )

    async def add_billing_account(self, account: BillingAccount) -> BillingAccount:
        self._check_account_unique(account)
        if account.id is None:
            account.id = self._next_id()
        self._accounts[account.id] = _copy(account)
        return account

    async def update_billing_account(self, account: BillingAccount) -> BillingAccount:
        if account.id is None or account.id not in self._accounts:
            raise ValueError("BillingAccount must exist to be updated")
        self._check_account_unique(account)
        self._accounts[account.id] = _copy(account)
        return account

    async def get_billing_account(self, account_id: str) -> Optional[BillingAccount]:
        return _copy(self._accounts.get(account_id))

    def _find_account(self, field: str, value: str) -> Optional[BillingAccount]:
        for account in self._accounts.values():
            if getattr(account, field) == value:
                return _copy(account)
        return None

    async def get_billing_account_by_subscription(
        self, subscription_id: str
    ) -> Optional[BillingAccount]:
        return self._find_account("subscription_id", subscription_id)

    async def get_billing_account_by_customer(
        self, customer_id: str
    ) -> Optional[BillingAccount]:
        return self._find_account("customer_id", customer_id)

    async def get_billing_account_by_user(self, user_id: str) -> Optional[BillingAccount]:
        return self._find_account("user_id", user_id)

    async def increment_addon_credits(self, account_id: str, amount: int) -> BillingAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise ValueError(f"Unknown billing account {account_id}")
        account.addon_credits_balance += amount
        account.updated_at = utcnow()
        return _copy(account)

    # Credit ledger
    async def add_credit_ledger_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        if entry.idempotency_key is not None:
            for existing in self._ledger:
                if existing.idempotency_key == entry.idempotency_key:
                    raise DuplicateKeyError(
                        CreditLedgerEntry.collection_name,
                        "idempotency_key",
                        entry.idempotency_key,
                    )
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(_copy(entry))
        return entry

    async def get_credit_ledger_entry_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditLedgerEntry]:
        for entry in self._ledger:
            if entry.idempotency_key == idempotency_key:
                return _copy(entry)
        return None

    async def get_credit_ledger_entries(
        self, user_id: str, limit: int, offset: int
    ) -> PaginatedResult:
        # Insertion order breaks ties between entries written in the same instant.
        entries = [e for e in self._ledger if e.user_id == user_id]
        entries = list(reversed(entries))
        entries.sort(key=lambda e: e.created_at, reverse=True)
        page = [_copy(e) for e in entries[offset : offset + limit]]
        return PaginatedResult(items=page, total=len(entries), limit=limit, offset=offset)

    # Webhook events
    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        return _copy(self._webhook_events.get(event_id))

    async def insert_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        if record.event_id in self._webhook_events:
            raise DuplicateKeyError(
                WebhookEventRecord.collection_name, "event_id", record.event_id
            )
        if record.id is None:
            record.id = self._next_id()
        self._webhook_events[record.event_id] = _copy(record)
        return record

    async def transition_webhook_event(
        self,
        event_id: str,
        expected_status: WebhookEventStatus,
        expected_updated_at: Optional[datetime],
        changes: Mapping[str, Any],
    ) -> bool:
        current = self._webhook_events.get(event_id)
        if current is None or current.status != expected_status:
            return False
        if expected_updated_at is not None and current.updated_at != expected_updated_at:
            return False
        self._webhook_events[event_id] = current.model_copy(update=dict(changes), deep=True)
        return True

    async def update_webhook_event(self, event_id: str, changes: Mapping[str, Any]) -> None:
        current = self._webhook_events.get(event_id)
        if current is None:
            raise ValueError(f"Unknown webhook event {event_id}")
        self._webhook_events[event_id] = current.model_copy(update=dict(changes), deep=True)

    # Revenue events
    async def add_revenue_event(self, event: RevenueEvent) -> RevenueEvent:
        if event.event_id in self._revenue:
            raise DuplicateKeyError(RevenueEvent.collection_name, "event_id", event.event_id)
        if event.id is None:
            event.id = self._next_id()
        self._revenue[event.event_id] = _copy(event)
        return event

    async def get_revenue_event_by_event_id(self, event_id: str) -> Optional[RevenueEvent]:
        return _copy(self._revenue.get(event_id))

    async def update_revenue_event(self, event: RevenueEvent) -> RevenueEvent:
        if event.event_id not in self._revenue:
            raise ValueError("RevenueEvent must exist to be updated")
        self._revenue[event.event_id] = _copy(event)
        return event

    # Price catalogue
    async def get_price_mappings(self) -> Iterable[PriceMapping]:
        return [_copy(m) for m in self._prices.values()]

    async def upsert_price_mapping(self, mapping: PriceMapping) -> PriceMapping:
        existing = self._prices.get(mapping.key)
        if existing is not None:
            mapping.id = existing.id
        elif mapping.id is None:
            mapping.id = self._next_id()
        self._prices[mapping.key] = _copy(mapping)
        return mapping

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications[notification.id] = _copy(notification)
        return notification

    async def update_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            raise ValueError("NotificationEvent must have id to be updated")
        self._notifications[notification.id] = _copy(notification)
        return notification

    async def get_notification_events(self, user_id: str) -> Iterable[NotificationEvent]:
        return [_copy(n) for n in self._notifications.values() if n.user_id == user_id]
