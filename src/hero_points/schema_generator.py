"""
Offline schema export for the HP collections.

    hero-points-schema --backend sql [--dialect postgres]
    hero-points-schema --backend nosql
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.audit import AuditEvent, ProcessedWebhookEvent
from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.payment import CharityPayout, PaymentRecord
from .models.profile import Profile, Subscription


HP_MODELS: List[Type[DBSerializableModel]] = [
    Profile,
    LedgerEntry,
    PaymentRecord,
    CharityPayout,
    Subscription,
    ProcessedWebhookEvent,
    AuditEvent,
]

_SQL_TYPES = {
    "integer": "BIGINT",
    "number": "DOUBLE PRECISION",
    "boolean": "BOOLEAN",
    "string": "TEXT",
    "date": "DATE",
}


def collect_schemas() -> Dict[str, Any]:
    """Logical description of every HP collection, keyed by collection name."""
    return {model.collection_name: model.db_schema() for model in HP_MODELS}


def sql_type(logical: str, dialect: str = "postgres") -> str:
    logical = logical.lower()
    if logical == "datetime":
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical in ("object", "array"):
        return "JSONB" if dialect == "postgres" else "JSON"
    return _SQL_TYPES.get(logical, "TEXT")


def _table_ddl(name: str, table: Dict[str, Any], dialect: str) -> str:
    required = set(table.get("required", []))
    body = [
        f'    "{column}" {sql_type(info["type"], dialect)} '
        + ("NOT NULL" if column in required else "NULL")
        for column, info in table["properties"].items()
    ]
    body.append(f'    PRIMARY KEY ("{table.get("primary_key") or "id"}")')
    # Replay protection and once-per-month settlement rely on these.
    for group in table.get("unique_together", []):
        body.append("    UNIQUE (" + ", ".join(f'"{c}"' for c in group) + ")")
    return f'CREATE TABLE IF NOT EXISTS "{name}" (\n' + ",\n".join(body) + "\n);\n"


def render_sql_ddl(schemas: Dict[str, Any], dialect: str = "postgres") -> str:
    return "\n".join(_table_ddl(name, table, dialect) for name, table in schemas.items())


def render_nosql_schema(schemas: Dict[str, Any]) -> str:
    """JSON validators plus the unique indexes each collection needs."""
    out = {
        name: {
            **table,
            "indexes": [
                {"keys": list(group), "unique": True}
                for group in table.get("unique_together", [])
            ],
        }
        for name, table in schemas.items()
    }
    return json.dumps(out, indent=2, default=str)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="hero-points-schema", description="Export HP collection schemas.")
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument("--dialect", default="postgres", help="postgres or mysql")
    args = parser.parse_args(argv)

    schemas = collect_schemas()
    if args.backend == "sql":
        print(render_sql_ddl(schemas, dialect=args.dialect))
    else:
        print(render_nosql_schema(schemas))


if __name__ == "__main__":
    main()
