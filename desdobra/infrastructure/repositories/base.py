from __future__ import annotations

import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable


class TenantScopeRequiredError(ValueError):
    """Raised when a repository is instantiated without tenant scope."""


class BaseRepository:
    bool_columns: frozenset[str] = frozenset()
    json_columns: frozenset[str] = frozenset()

    def __init__(self, *, tenant_id: str | None = None) -> None:
        scope = str(tenant_id or "").strip()
        if not scope:
            raise TenantScopeRequiredError("tenant_id is required for repository access")
        self.tenant_id = scope

    def build_tenant_clause(
        self,
        *,
        table_alias: str | None = None,
        column_name: str = "tenant_id",
    ) -> str:
        prefix = f"{table_alias.strip()}." if table_alias and str(table_alias).strip() else ""
        return f"{prefix}{column_name} = ?"

    def enforce_tenant_scope(
        self,
        query: str,
        *,
        table_alias: str | None = None,
        column_name: str = "tenant_id",
    ) -> str:
        raw_query = str(query or "").strip()
        if not raw_query:
            return raw_query

        if "tenant_id" in raw_query.lower():
            return raw_query

        clause = self.build_tenant_clause(table_alias=table_alias, column_name=column_name)
        marker = re.search(r"\b(group\s+by|order\s+by|limit|offset|returning)\b", raw_query, flags=re.IGNORECASE)
        if marker:
            head = raw_query[: marker.start()].rstrip()
            tail = raw_query[marker.start() :]
        else:
            head = raw_query
            tail = ""

        if re.search(r"\bwhere\b", head, flags=re.IGNORECASE):
            scoped_head = f"{head} AND {clause}"
        else:
            scoped_head = f"{head} WHERE {clause}"
        return f"{scoped_head} {tail}".strip()

    @staticmethod
    def inserted_id(cursor) -> int:
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0])

    def row_to_dict(self, row: Any) -> dict | None:
        if row is None:
            return None
        data = dict(row)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = float(value)
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, date):
                data[key] = value.isoformat()
            if key in self.bool_columns and data[key] is not None:
                data[key] = bool(data[key])
            if key in self.json_columns and isinstance(data[key], str):
                data[key] = json.loads(data[key])
        return data

    def rows_to_dicts(self, rows: Iterable[Any]) -> list[dict]:
        return [self.row_to_dict(row) for row in rows]
