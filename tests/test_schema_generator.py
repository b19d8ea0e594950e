from __future__ import annotations

import json

from billing_ledger.schema_generator import (
    generate_logical_schema,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_persisted_models():
    schema = generate_logical_schema()

    assert set(schema) == {
        "billing_accounts",
        "credit_ledger",
        "webhook_events",
        "revenue_events",
        "price_mappings",
        "billing_notifications",
    }
    accounts = schema["billing_accounts"]
    assert accounts["unique"] == ["user_id", "subscription_id"]
    assert accounts["properties"]["plan_key"]["type"] == "string"
    assert accounts["properties"]["plan_key"]["default"] == "none"
    assert accounts["properties"]["current_period_start"]["nullable"] is True
    assert "user_id" in accounts["required"]


def test_sql_ddl_includes_unique_indexes():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "credit_ledger"' in ddl
    assert (
        'CREATE UNIQUE INDEX IF NOT EXISTS "ux_credit_ledger_idempotency_key" '
        'ON "credit_ledger" ("idempotency_key");'
    ) in ddl
    assert '"event_id" TEXT NOT NULL' in ddl
    assert '"created_at" TIMESTAMPTZ NULL' in ddl


def test_nosql_schema_is_json():
    rendered = json.loads(render_nosql_schema(generate_logical_schema()))
    assert rendered["webhook_events"]["unique"] == ["event_id"]
