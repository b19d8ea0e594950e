"""
Runtime configuration for the billing ledger.

All settings can be overridden via environment variables (BILLING_ prefix)
or a local ``.env`` file. Mapping-valued settings take JSON, e.g.
``BILLING_PRICE_IDS='{"starter": "price_123"}'``.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.billing import DEFAULT_PLAN_MONTHLY_CREDITS, PlanKey


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BILLING_", env_file=".env", extra="ignore"
    )

    # Storage; the in-memory backend is used when no Mongo URI is set
    mongo_uri: Optional[str] = None
    mongo_db: str = "billing_ledger"
    mongo_transactions: bool = True  # requires a replica set

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    plan_monthly_credits: Dict[PlanKey, int] = dict(DEFAULT_PLAN_MONTHLY_CREDITS)
    price_ids: Dict[str, str] = {}
    infer_plan_from_product_name: bool = True
    price_cache_ttl_seconds: int = 300

    estimated_fee_rate: Decimal = Decimal("0.06")
    default_currency: str = "USD"

    # Age after which a stuck "processing" webhook event may be re-claimed.
    # None keeps such events blocked until cleared by hand.
    processing_lease_seconds: Optional[int] = 900

    ledger_log_path: Path = Path("logs/credit_ledger.log")

    user_metadata_key: str = "user_id"
    addon_credits_metadata_key: str = "addon_credits"


settings = Settings()
