from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Mapping, Optional

from ..models.base import PaginatedResult
from ..models.billing import BillingAccount, PriceMapping
from ..models.ledger import CreditLedgerEntry
from ..models.notification import NotificationEvent
from ..models.revenue import RevenueEvent
from ..models.webhook_event import WebhookEventRecord, WebhookEventStatus


class DuplicateKeyError(Exception):
    """Raised by any backend when a write violates a uniqueness constraint."""

    def __init__(self, collection: str, field: str, value: Any) -> None:
        super().__init__(f"duplicate {field}={value!r} in {collection}")
        self.collection = collection
        self.field = field
        self.value = value


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (MongoDB, in-memory, etc.) should implement
    these methods. Multi-step writes are made atomic through the
    `transaction()` context manager; uniqueness constraints declared on the
    models are enforced by the backend and reported as `DuplicateKeyError`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.
        """
        yield

    # Billing accounts
    @abstractmethod
    async def add_billing_account(self, account: BillingAccount) -> BillingAccount: ...

    @abstractmethod
    async def update_billing_account(self, account: BillingAccount) -> BillingAccount: ...

    @abstractmethod
    async def get_billing_account(self, account_id: str) -> Optional[BillingAccount]: ...

    @abstractmethod
    async def get_billing_account_by_subscription(
        self, subscription_id: str
    ) -> Optional[BillingAccount]: ...

    @abstractmethod
    async def get_billing_account_by_customer(
        self, customer_id: str
    ) -> Optional[BillingAccount]: ...

    @abstractmethod
    async def get_billing_account_by_user(self, user_id: str) -> Optional[BillingAccount]: ...

    @abstractmethod
    async def increment_addon_credits(self, account_id: str, amount: int) -> BillingAccount:
        """
        Atomically add `amount` to the stored add-on balance and return the
        updated account. Concurrent increments are never lost.
        """
        ...

    # Credit ledger (append-only)
    @abstractmethod
    async def add_credit_ledger_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry: ...

    @abstractmethod
    async def get_credit_ledger_entry_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditLedgerEntry]: ...

    @abstractmethod
    async def get_credit_ledger_entries(
        self, user_id: str, limit: int, offset: int
    ) -> PaginatedResult:
        """Entries for a user, newest first."""
        ...

    # Webhook events
    @abstractmethod
    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]: ...

    @abstractmethod
    async def insert_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        """Insert a new record; raises DuplicateKeyError if the event id exists."""
        ...

    @abstractmethod
    async def transition_webhook_event(
        self,
        event_id: str,
        expected_status: WebhookEventStatus,
        expected_updated_at: Optional[datetime],
        changes: Mapping[str, Any],
    ) -> bool:
        """
        Compare-and-set: apply `changes` only if the stored record still has
        the expected status and, unless it is None, the expected updated_at.
        Returns whether it was applied.
        """
        ...

    @abstractmethod
    async def update_webhook_event(self, event_id: str, changes: Mapping[str, Any]) -> None: ...

    # Revenue events (append-only apart from the actual fee)
    @abstractmethod
    async def add_revenue_event(self, event: RevenueEvent) -> RevenueEvent: ...

    @abstractmethod
    async def get_revenue_event_by_event_id(self, event_id: str) -> Optional[RevenueEvent]: ...

    @abstractmethod
    async def update_revenue_event(self, event: RevenueEvent) -> RevenueEvent: ...

    # Price catalogue
    @abstractmethod
    async def get_price_mappings(self) -> Iterable[PriceMapping]: ...

    @abstractmethod
    async def upsert_price_mapping(self, mapping: PriceMapping) -> PriceMapping: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    @abstractmethod
    async def update_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent: ...

    @abstractmethod
    async def get_notification_events(self, user_id: str) -> Iterable[NotificationEvent]: ...
