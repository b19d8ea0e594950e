from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ..cache.memory import InMemoryAsyncCache
from ..config import settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..errors import WebhookConfigurationError, WebhookSignatureError
from ..logging.credit_ledger import CreditLedger
from ..models.api_models import (
    BillingAccountResponse,
    CreditLedgerEntryResponse,
    CreditLedgerPageResponse,
    PriceMappingRequest,
    PriceMappingResponse,
    WebhookAckResponse,
)
from ..notifications.queue import InMemoryNotificationQueue
from ..providers.stripe_client import StripeProviderClient
from ..services.account_resolver import BillingAccountResolver
from ..services.credit_service import CreditService
from ..services.idempotency import IdempotencyGuard
from ..services.notification_service import NotificationService
from ..services.price_resolver import PriceResolver
from ..services.reconciler import Reconciler
from ..services.revenue_service import RevenueService
from ..webhooks.processor import WebhookOutcome, WebhookProcessor
from ..webhooks.signature import construct_event
from ..webhooks.translator import EventTranslator


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

MAX_LEDGER_PAGE = 100


def _create_db_manager() -> BaseDBManager:
    if settings.mongo_uri:
        return MongoDBManager.from_client_uri(
            settings.mongo_uri,
            settings.mongo_db,
            use_transactions=settings.mongo_transactions,
        )
    return InMemoryDBManager()


_db = _create_db_manager()
_cache = InMemoryAsyncCache()
_ledger = CreditLedger(db=_db, file_path=settings.ledger_log_path)
_queue = InMemoryNotificationQueue()
_accounts = BillingAccountResolver(_db)
_notification_service = NotificationService(db=_db, queue=_queue)
_price_resolver = PriceResolver(
    db=_db,
    cache=_cache,
    static_prices=settings.price_ids,
    infer_from_product_name=settings.infer_plan_from_product_name,
    cache_ttl_seconds=settings.price_cache_ttl_seconds,
)
_credit_service = CreditService(db=_db, ledger=_ledger, resolver=_accounts)
_revenue_service = RevenueService(
    db=_db,
    fee_rate=settings.estimated_fee_rate,
    default_currency=settings.default_currency,
)
_reconciler = Reconciler(
    db=_db,
    ledger=_ledger,
    resolver=_accounts,
    notifications=_notification_service,
    plan_monthly_credits=settings.plan_monthly_credits,
)
_processor = WebhookProcessor(
    guard=IdempotencyGuard(
        _db,
        stale_after=(
            timedelta(seconds=settings.processing_lease_seconds)
            if settings.processing_lease_seconds is not None
            else None
        ),
    ),
    translator=EventTranslator(
        provider=StripeProviderClient(settings.stripe_secret_key),
        prices=_price_resolver,
        accounts=_accounts,
        user_metadata_key=settings.user_metadata_key,
        addon_credits_metadata_key=settings.addon_credits_metadata_key,
        default_currency=settings.default_currency,
    ),
    reconciler=_reconciler,
    credits=_credit_service,
    revenue=_revenue_service,
    accounts=_accounts,
)
_storage_ready = False


async def _ensure_storage() -> None:
    global _storage_ready
    if _storage_ready:
        return
    if isinstance(_db, MongoDBManager):
        await _db.ensure_indexes()
    _storage_ready = True


async def get_processor() -> WebhookProcessor:
    await _ensure_storage()
    return _processor


async def get_credit_service() -> CreditService:
    await _ensure_storage()
    return _credit_service


async def get_price_resolver() -> PriceResolver:
    await _ensure_storage()
    return _price_resolver


def get_webhook_secret() -> Optional[str]:
    return settings.stripe_webhook_secret


@router.post("/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_processor),
    webhook_secret: Optional[str] = Depends(get_webhook_secret),
):
    payload = await request.body()
    try:
        event = construct_event(payload, request.headers.get("stripe-signature"), webhook_secret)
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except WebhookConfigurationError as exc:
        logger.error("Rejecting Stripe webhook: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook endpoint is not configured"},
        )

    try:
        outcome = await processor.process(event)
    except Exception:
        # Already logged and recorded as failed; the provider will redeliver.
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook processing failed"},
        )

    if outcome == WebhookOutcome.DUPLICATE:
        return WebhookAckResponse(ok=True, message="Event already processed")
    return WebhookAckResponse(ok=True)


@router.get("/accounts/{user_id}", response_model=BillingAccountResponse)
async def get_account(
    user_id: str, credit_service: CreditService = Depends(get_credit_service)
) -> BillingAccountResponse:
    account = await credit_service.get_account(user_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Billing record not found")
    return BillingAccountResponse(
        id=account.id or "",
        user_id=account.user_id,
        customer_id=account.customer_id,
        subscription_id=account.subscription_id,
        plan_key=account.plan_key.value,
        status=account.status.value,
        current_period_start=account.current_period_start,
        current_period_end=account.current_period_end,
        monthly_credit_limit=account.monthly_credit_limit,
        monthly_credits_used=account.monthly_credits_used,
        monthly_credits_remaining=account.monthly_credits_remaining,
        addon_credits_balance=account.addon_credits_balance,
    )


@router.get("/ledger/{user_id}", response_model=CreditLedgerPageResponse)
async def get_ledger(
    user_id: str,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    credit_service: CreditService = Depends(get_credit_service),
) -> CreditLedgerPageResponse:
    page = await credit_service.get_credit_history(
        user_id, limit=min(limit, MAX_LEDGER_PAGE), offset=offset
    )
    return CreditLedgerPageResponse(
        entries=[
            CreditLedgerEntryResponse(
                id=entry.id or "",
                amount=entry.amount,
                reason=entry.reason.value,
                source=entry.source.value,
                transaction_id=entry.transaction_id,
                monthly_credits_used_after=entry.monthly_credits_used_after,
                addon_credits_balance_after=entry.addon_credits_balance_after,
                created_at=entry.created_at,
            )
            for entry in page.items
        ],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.put("/prices/{key}", response_model=PriceMappingResponse)
async def set_price_mapping(
    key: str,
    payload: PriceMappingRequest,
    price_resolver: PriceResolver = Depends(get_price_resolver),
) -> PriceMappingResponse:
    mapping = await price_resolver.set_price_mapping(key, payload.price_id)
    return PriceMappingResponse(key=mapping.key, price_id=mapping.price_id)
