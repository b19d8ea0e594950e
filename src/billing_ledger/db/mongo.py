from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError

from .base import BaseDBManager, DuplicateKeyError
from ..models.base import DBSerializableModel, PaginatedResult, utcnow
from ..models.billing import BillingAccount, PriceMapping
from ..models.ledger import CreditLedgerEntry
from ..models.notification import NotificationEvent
from ..models.revenue import RevenueEvent
from ..models.webhook_event import WebhookEventRecord, WebhookEventStatus


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

INDEXED_MODELS: tuple[Type[DBSerializableModel], ...] = (
    BillingAccount,
    CreditLedgerEntry,
    WebhookEventRecord,
    RevenueEvent,
    PriceMapping,
)

_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "billing_mongo_session", default=None
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    Uniqueness constraints come from unique indexes created by
    `ensure_indexes()`. Multi-document transactions are used when
    `use_transactions` is set, which requires a replica set; otherwise
    each document write is individually atomic.
    """

    def __init__(self, database: AsyncIOMotorDatabase, use_transactions: bool = True) -> None:
        self._db = database
        self._use_transactions = use_transactions
        if not use_transactions:
            logger.warning(
                "MongoDB transactions are disabled; a failure between writes of one "
                "reconciliation can leave an account updated without its ledger entries"
            )

    @classmethod
    def from_client_uri(
        cls, uri: str, db_name: str, use_transactions: bool = True
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], use_transactions=use_transactions)

    async def ensure_indexes(self) -> None:
        """Create the unique indexes backing each model's `unique_fields`."""
        for model in INDEXED_MODELS:
            col = self._db[model.collection_name]
            for field_name in model.unique_fields:
                field = model.model_fields[field_name]
                kwargs: Dict[str, Any] = {"unique": True, "name": f"uniq_{field_name}"}
                if not field.is_required():
                    kwargs["partialFilterExpression"] = {field_name: {"$type": "string"}}
                await col.create_index([(field_name, ASCENDING)], **kwargs)
        await self._db[CreditLedgerEntry.collection_name].create_index(
            [("user_id", ASCENDING), ("created_at", DESCENDING)]
        )
        await self._db[BillingAccount.collection_name].create_index([("customer_id", ASCENDING)])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not self._use_transactions or _session.get() is not None:
            yield
            return

        async with await self._db.client.start_session() as session:
            async with session.start_transaction():
                token = _session.set(session)
                try:
                    yield
                finally:
                    _session.reset(token)

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    async def _insert(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        data = self._prepare_insert(model)
        try:
            await col.insert_one(data, session=_session.get())
        except MongoDuplicateKeyError as exc:
            raise self._duplicate(model, exc) from exc
        return model

    async def _replace(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        data = self._prepare_update(model)
        try:
            await col.replace_one({"_id": data["_id"]}, data, upsert=False, session=_session.get())
        except MongoDuplicateKeyError as exc:
            raise self._duplicate(model, exc) from exc
        return model

    async def _find_one(
        self, model_cls: Type[TModel], query: Mapping[str, Any]
    ) -> Optional[TModel]:
        doc = await self._db[model_cls.collection_name].find_one(query, session=_session.get())
        return self._decode(model_cls, doc)

    @staticmethod
    def _duplicate(model: DBSerializableModel, exc: MongoDuplicateKeyError) -> DuplicateKeyError:
        key_value = (exc.details or {}).get("keyValue") or {}
        field = next(iter(key_value), "_id")
        return DuplicateKeyError(model.collection_name, field, key_value.get(field))

    # Billing accounts
    async def add_billing_account(self, account: BillingAccount) -> BillingAccount:
        return await self._insert(account)

    async def update_billing_account(self, account: BillingAccount) -> BillingAccount:
        return await self._replace(account)

    async def get_billing_account(self, account_id: str) -> Optional[BillingAccount]:
        return await self._find_one(BillingAccount, {"_id": account_id})

    async def get_billing_account_by_subscription(
        self, subscription_id: str
    ) -> Optional[BillingAccount]:
        return await self._find_one(BillingAccount, {"subscription_id": subscription_id})

    async def get_billing_account_by_customer(
        self, customer_id: str
    ) -> Optional[BillingAccount]:
        return await self._find_one(BillingAccount, {"customer_id": customer_id})

    async def get_billing_account_by_user(self, user_id: str) -> Optional[BillingAccount]:
        return await self._find_one(BillingAccount, {"user_id": user_id})

    async def increment_addon_credits(self, account_id: str, amount: int) -> BillingAccount:
        doc = await self._db[BillingAccount.collection_name].find_one_and_update(
            {"_id": account_id},
            {"$inc": {"addon_credits_balance": amount}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=_session.get(),
        )
        if doc is None:
            raise ValueError(f"Unknown billing account {account_id}")
        return self._decode(BillingAccount, doc)  # type: ignore[return-value]

    # Credit ledger
    async def add_credit_ledger_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        return await self._insert(entry)

    async def get_credit_ledger_entry_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditLedgerEntry]:
        return await self._find_one(CreditLedgerEntry, {"idempotency_key": idempotency_key})

    async def get_credit_ledger_entries(
        self, user_id: str, limit: int, offset: int
    ) -> PaginatedResult:
        col = self._db[CreditLedgerEntry.collection_name]
        session = _session.get()
        total = await col.count_documents({"user_id": user_id}, session=session)
        cursor = (
            col.find({"user_id": user_id}, session=session)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip(offset)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        items = [self._decode(CreditLedgerEntry, d) for d in docs]
        return PaginatedResult(items=items, total=total, limit=limit, offset=offset)

    # Webhook events
    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        return await self._find_one(WebhookEventRecord, {"event_id": event_id})

    async def insert_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        return await self._insert(record)

    async def transition_webhook_event(
        self,
        event_id: str,
        expected_status: WebhookEventStatus,
        expected_updated_at: Optional[datetime],
        changes: Mapping[str, Any],
    ) -> bool:
        col = self._db[WebhookEventRecord.collection_name]
        query: Dict[str, Any] = {"event_id": event_id, "status": expected_status.value}
        if expected_updated_at is not None:
            query["updated_at"] = expected_updated_at
        doc = await col.find_one_and_update(
            query,
            {"$set": self._set_document(changes)},
            return_document=ReturnDocument.AFTER,
            session=_session.get(),
        )
        return doc is not None

    async def update_webhook_event(self, event_id: str, changes: Mapping[str, Any]) -> None:
        col = self._db[WebhookEventRecord.collection_name]
        result = await col.update_one(
            {"event_id": event_id},
            {"$set": self._set_document(changes)},
            session=_session.get(),
        )
        if result.matched_count == 0:
            raise ValueError(f"Unknown webhook event {event_id}")

    @staticmethod
    def _set_document(changes: Mapping[str, Any]) -> Dict[str, Any]:
        return {key: value.value if isinstance(value, Enum) else value for key, value in changes.items()}

    # Revenue events
    async def add_revenue_event(self, event: RevenueEvent) -> RevenueEvent:
        return await self._insert(event)

    async def get_revenue_event_by_event_id(self, event_id: str) -> Optional[RevenueEvent]:
        return await self._find_one(RevenueEvent, {"event_id": event_id})

    async def update_revenue_event(self, event: RevenueEvent) -> RevenueEvent:
        return await self._replace(event)

    # Price catalogue
    async def get_price_mappings(self) -> Iterable[PriceMapping]:
        col = self._db[PriceMapping.collection_name]
        docs = await col.find({}, session=_session.get()).to_list(length=None)
        return [self._decode(PriceMapping, d) for d in docs]

    async def upsert_price_mapping(self, mapping: PriceMapping) -> PriceMapping:
        col = self._db[PriceMapping.collection_name]
        data = mapping.serialize_for_db()
        data.pop("id", None)
        doc = await col.find_one_and_update(
            {"key": mapping.key},
            {"$set": data, "$setOnInsert": {"_id": mapping.id or uuid4().hex}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=_session.get(),
        )
        mapping.id = str(doc["_id"])
        return mapping

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        return await self._insert(notification)

    async def update_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        return await self._replace(notification)

    async def get_notification_events(self, user_id: str) -> Iterable[NotificationEvent]:
        col = self._db[NotificationEvent.collection_name]
        docs = await col.find({"user_id": user_id}, session=_session.get()).sort(
            "created_at", ASCENDING
        ).to_list(length=None)
        return [self._decode(NotificationEvent, d) for d in docs]
