from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.base import DBSerializableModel
from .models.billing import BillingAccount, PriceMapping
from .models.ledger import CreditLedgerEntry
from .models.notification import NotificationEvent
from .models.revenue import RevenueEvent
from .models.webhook_event import WebhookEventRecord


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    BillingAccount,
    CreditLedgerEntry,
    WebhookEventRecord,
    RevenueEvent,
    PriceMapping,
    NotificationEvent,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    SQL and NoSQL renderers both work from this description.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Small SQL DDL renderer, including the unique indexes the billing
    invariants depend on. Real deployments would feed this into their
    migration tool.
    """
    lines: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in spec.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        lines.append(ddl)
        for field_name in spec.get("unique", []):
            lines.append(
                f'CREATE UNIQUE INDEX IF NOT EXISTS "ux_{table_name}_{field_name}" '
                f'ON "{table_name}" ("{field_name}");\n'
            )
    return "\n".join(lines)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    JSON description usable to configure validators and indexes for
    document databases like MongoDB.
    """
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "BIGINT"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type == "object":
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the billing ledger."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    args = parser.parse_args()

    schema = generate_logical_schema()

    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
