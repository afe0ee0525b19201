from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List

from desdobra.infrastructure.repositories.base import BaseRepository


_OPERATION_UPDATABLE = frozenset(
    {
        "status",
        "notes",
        "expected_settlement_date",
        "settlement_account_id",
        "gross_amount",
        "costs_amount",
        "net_amount",
        "version_counter",
        "current_version_id",
        "sent_at",
        "sent_by",
        "last_response_at",
        "completed_at",
        "completed_by",
    }
)

_INSTALLMENT_UPDATABLE = frozenset(
    {
        "due_date",
        "factor_custody_status",
        "factor_id",
        "factor_operation_item_id",
        "factor_assigned_at",
        "factor_released_at",
    }
)

_INSTALLMENT_SELECT = """
    SELECT
        i.id,
        i.ar_title_id,
        i.installment_number,
        i.due_date,
        i.amount_original,
        i.amount_open,
        i.status,
        i.factor_custody_status,
        i.factor_id,
        i.factor_operation_item_id,
        t.document_number,
        t.sales_document_id,
        t.customer_id,
        o.name AS customer_name
    FROM ar_installments i
    JOIN ar_titles t ON t.id = i.ar_title_id AND t.tenant_id = i.tenant_id
    LEFT JOIN organizations o ON o.id = t.customer_id
"""


def _json_param(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, default=str)


def _set_clause(changes: Dict[str, Any], allowed: Iterable[str]) -> tuple[str, list]:
    allowed_columns = set(allowed)
    unknown = [key for key in changes if key not in allowed_columns]
    if unknown:
        raise ValueError(f"columns not updatable: {', '.join(sorted(unknown))}")
    assignments = [f"{column} = ?" for column in changes]
    assignments.append("updated_at = CURRENT_TIMESTAMP")
    return ", ".join(assignments), list(changes.values())


class FactorRepository(BaseRepository):
    bool_columns = frozenset({"is_active", "default_auto_settle_buyback", "buyback_settle_now"})
    json_columns = frozenset({"snapshot_json", "metadata", "details"})

    # Factors

    def create_factor(self, db, *, data: Dict[str, Any], user_id: str | None) -> dict:
        cursor = db.execute(
            """
            INSERT INTO factors (
                organization_id, name, code, default_interest_rate, default_fee_rate,
                default_iof_rate, default_other_cost_rate, default_grace_days,
                default_auto_settle_buyback, notes, tenant_id, created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                data.get("organization_id"),
                data["name"],
                data.get("code"),
                data.get("default_interest_rate", 0),
                data.get("default_fee_rate", 0),
                data.get("default_iof_rate", 0),
                data.get("default_other_cost_rate", 0),
                data.get("default_grace_days", 0),
                bool(data.get("default_auto_settle_buyback")),
                data.get("notes"),
                self.tenant_id,
                user_id,
            ),
        )
        return self.get_factor(db, self.inserted_id(cursor))

    def get_factor(self, db, factor_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM factors WHERE id = ? AND tenant_id = ? LIMIT 1",
            (factor_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_factors(self, db) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM factors
            WHERE tenant_id = ? AND is_active = ?
            ORDER BY name ASC, id ASC
            """,
            (self.tenant_id, True),
        ).fetchall()
        return self.rows_to_dicts(rows)

    # Operations

    def next_operation_number(self, db) -> int:
        row = db.execute(
            "SELECT COALESCE(MAX(operation_number), 0) AS last_number FROM factor_operations WHERE tenant_id = ?",
            (self.tenant_id,),
        ).fetchone()
        return int(row["last_number"] or 0) + 1

    def create_operation(self, db, *, data: Dict[str, Any], user_id: str | None) -> dict:
        cursor = db.execute(
            """
            INSERT INTO factor_operations (
                factor_id, operation_number, reference, issue_date, expected_settlement_date,
                settlement_account_id, status, currency, notes, tenant_id, created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?, ?)
            RETURNING id
            """,
            (
                data["factor_id"],
                self.next_operation_number(db),
                data.get("reference"),
                data["issue_date"],
                data.get("expected_settlement_date"),
                data.get("settlement_account_id"),
                data.get("currency") or "BRL",
                data.get("notes"),
                self.tenant_id,
                user_id,
            ),
        )
        return self.get_operation(db, self.inserted_id(cursor))

    def get_operation(self, db, operation_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM factor_operations WHERE id = ? AND tenant_id = ? LIMIT 1",
            (operation_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_operations(self, db, *, status: str | None = None, factor_id: int | None = None, limit: int = 200) -> list[dict]:
        query = """
            SELECT o.*, f.name AS factor_name
            FROM factor_operations o
            JOIN factors f ON f.id = o.factor_id
        """
        conditions: List[str] = []
        params: List[Any] = []
        if status:
            conditions.append("o.status = ?")
            params.append(status)
        if factor_id:
            conditions.append("o.factor_id = ?")
            params.append(factor_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY o.created_at DESC, o.id DESC LIMIT ?"

        scoped = self.enforce_tenant_scope(query, table_alias="o")
        values = (*params, self.tenant_id, max(1, int(limit)))
        rows = db.execute(scoped, values).fetchall()
        return self.rows_to_dicts(rows)

    def update_operation(self, db, operation_id: int, changes: Dict[str, Any]) -> dict | None:
        if changes:
            assignments, params = _set_clause(changes, _OPERATION_UPDATABLE)
            db.execute(
                f"UPDATE factor_operations SET {assignments} WHERE id = ? AND tenant_id = ?",
                (*params, operation_id, self.tenant_id),
            )
        return self.get_operation(db, operation_id)

    def update_operation_status(
        self,
        db,
        operation_id: int,
        *,
        expected_status: str,
        new_status: str,
        changes: Dict[str, Any] | None = None,
    ) -> bool:
        """Conditional status write; False when another writer moved the status first."""
        fields = dict(changes or {})
        fields["status"] = new_status
        assignments, params = _set_clause(fields, _OPERATION_UPDATABLE)
        cursor = db.execute(
            f"UPDATE factor_operations SET {assignments} WHERE id = ? AND tenant_id = ? AND status = ?",
            (*params, operation_id, self.tenant_id, expected_status),
        )
        return int(cursor.rowcount or 0) > 0

    # Items

    def list_items(self, db, operation_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM factor_operation_items
            WHERE operation_id = ? AND tenant_id = ?
            ORDER BY line_no ASC, id ASC
            """,
            (operation_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def get_item(self, db, operation_id: int, item_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM factor_operation_items
            WHERE id = ? AND operation_id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (item_id, operation_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def next_line_no(self, db, operation_id: int) -> int:
        row = db.execute(
            """
            SELECT COALESCE(MAX(line_no), 0) AS last_line
            FROM factor_operation_items
            WHERE operation_id = ? AND tenant_id = ?
            """,
            (operation_id, self.tenant_id),
        ).fetchone()
        return int(row["last_line"] or 0) + 1

    def create_item(self, db, *, data: Dict[str, Any], user_id: str | None) -> dict:
        cursor = db.execute(
            """
            INSERT INTO factor_operation_items (
                operation_id, line_no, action_type, ar_installment_id, ar_title_id,
                sales_document_id, customer_id, installment_number_snapshot,
                due_date_snapshot, amount_snapshot, proposed_due_date,
                buyback_settle_now, notes, tenant_id, created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                data["operation_id"],
                data["line_no"],
                data["action_type"],
                data["ar_installment_id"],
                data["ar_title_id"],
                data.get("sales_document_id"),
                data.get("customer_id"),
                data["installment_number_snapshot"],
                data["due_date_snapshot"],
                data["amount_snapshot"],
                data.get("proposed_due_date"),
                bool(data.get("buyback_settle_now")),
                data.get("notes"),
                self.tenant_id,
                user_id,
            ),
        )
        return self.get_item(db, data["operation_id"], self.inserted_id(cursor))

    def delete_item(self, db, operation_id: int, item_id: int) -> int:
        db.execute(
            "DELETE FROM factor_operation_responses WHERE operation_item_id = ? AND operation_id = ? AND tenant_id = ?",
            (item_id, operation_id, self.tenant_id),
        )
        cursor = db.execute(
            "DELETE FROM factor_operation_items WHERE id = ? AND operation_id = ? AND tenant_id = ?",
            (item_id, operation_id, self.tenant_id),
        )
        return int(cursor.rowcount or 0)

    def update_item_response(
        self,
        db,
        item_id: int,
        *,
        status: str,
        final_amount: Any,
        final_due_date: str | None,
    ) -> None:
        db.execute(
            """
            UPDATE factor_operation_items
            SET status = ?, final_amount = ?, final_due_date = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (status, final_amount, final_due_date, item_id, self.tenant_id),
        )

    # Installments

    def get_installment(self, db, installment_id: int) -> dict | None:
        row = db.execute(
            _INSTALLMENT_SELECT + " WHERE i.id = ? AND i.tenant_id = ? LIMIT 1",
            (installment_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def update_installment(self, db, installment_id: int, changes: Dict[str, Any]) -> None:
        if not changes:
            return
        assignments, params = _set_clause(changes, _INSTALLMENT_UPDATABLE)
        db.execute(
            f"UPDATE ar_installments SET {assignments} WHERE id = ? AND tenant_id = ?",
            (*params, installment_id, self.tenant_id),
        )

    def list_open_installments(
        self,
        db,
        *,
        statuses: Iterable[str],
        query_text: str | None = None,
        limit: int = 300,
    ) -> list[dict]:
        status_values = sorted(statuses)
        placeholders = ", ".join("?" for _ in status_values)
        query = _INSTALLMENT_SELECT + f" WHERE i.tenant_id = ? AND i.status IN ({placeholders}) AND i.amount_open > 0"
        params: List[Any] = [self.tenant_id, *status_values]
        needle = str(query_text or "").strip()
        if needle:
            query += " AND LOWER(COALESCE(t.document_number, '')) LIKE ?"
            params.append(f"%{needle.lower()}%")
        query += " ORDER BY i.due_date ASC, i.id ASC LIMIT ?"
        params.append(max(1, int(limit)))
        rows = db.execute(query, params).fetchall()
        return self.rows_to_dicts(rows)

    def list_installments_with_factor(self, db, *, statuses: Iterable[str], limit: int = 300) -> list[dict]:
        status_values = sorted(statuses)
        placeholders = ", ".join("?" for _ in status_values)
        rows = db.execute(
            _INSTALLMENT_SELECT
            + f"""
            WHERE i.tenant_id = ? AND i.status IN ({placeholders}) AND i.factor_custody_status = 'with_factor'
            ORDER BY i.due_date ASC, i.id ASC
            LIMIT ?
            """,
            (self.tenant_id, *status_values, max(1, int(limit))),
        ).fetchall()
        return self.rows_to_dicts(rows)

    # Versions and responses

    def create_version(self, db, *, data: Dict[str, Any], user_id: str | None) -> dict:
        cursor = db.execute(
            """
            INSERT INTO factor_operation_versions (
                operation_id, version_number, source_status, total_items,
                gross_amount, costs_amount, net_amount, snapshot_json, tenant_id, created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                data["operation_id"],
                data["version_number"],
                data["source_status"],
                data["total_items"],
                data["gross_amount"],
                data["costs_amount"],
                data["net_amount"],
                _json_param(data["snapshot_json"]),
                self.tenant_id,
                user_id,
            ),
        )
        return self.get_version(db, data["operation_id"], self.inserted_id(cursor))

    def get_version(self, db, operation_id: int, version_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM factor_operation_versions
            WHERE id = ? AND operation_id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (version_id, operation_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_versions(self, db, operation_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM factor_operation_versions
            WHERE operation_id = ? AND tenant_id = ?
            ORDER BY version_number DESC
            """,
            (operation_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def upsert_response(self, db, *, data: Dict[str, Any], user_id: str | None) -> dict:
        db.execute(
            """
            INSERT INTO factor_operation_responses (
                operation_id, version_id, operation_item_id, response_status,
                response_code, response_message, accepted_amount, adjusted_amount,
                adjusted_due_date, fee_amount, interest_amount, iof_amount,
                other_cost_amount, total_cost_amount, processed_by, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (version_id, operation_item_id) DO UPDATE SET
                response_status = excluded.response_status,
                response_code = excluded.response_code,
                response_message = excluded.response_message,
                accepted_amount = excluded.accepted_amount,
                adjusted_amount = excluded.adjusted_amount,
                adjusted_due_date = excluded.adjusted_due_date,
                fee_amount = excluded.fee_amount,
                interest_amount = excluded.interest_amount,
                iof_amount = excluded.iof_amount,
                other_cost_amount = excluded.other_cost_amount,
                total_cost_amount = excluded.total_cost_amount,
                processed_by = excluded.processed_by,
                imported_at = CURRENT_TIMESTAMP,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                data["operation_id"],
                data["version_id"],
                data["operation_item_id"],
                data["response_status"],
                data.get("response_code"),
                data.get("response_message"),
                data.get("accepted_amount"),
                data.get("adjusted_amount"),
                data.get("adjusted_due_date"),
                data.get("fee_amount", 0),
                data.get("interest_amount", 0),
                data.get("iof_amount", 0),
                data.get("other_cost_amount", 0),
                data.get("total_cost_amount", 0),
                user_id,
                self.tenant_id,
            ),
        )
        row = db.execute(
            """
            SELECT *
            FROM factor_operation_responses
            WHERE version_id = ? AND operation_item_id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (data["version_id"], data["operation_item_id"], self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_responses(self, db, operation_id: int) -> list[dict]:
        # Mais recente primeiro: o primeiro retorno por item e o vigente.
        rows = db.execute(
            """
            SELECT r.*, v.version_number
            FROM factor_operation_responses r
            JOIN factor_operation_versions v ON v.id = r.version_id
            WHERE r.operation_id = ? AND r.tenant_id = ?
            ORDER BY v.version_number DESC, r.id DESC
            """,
            (operation_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    # Postings and payables

    def create_posting(self, db, *, data: Dict[str, Any], user_id: str | None) -> bool:
        cursor = db.execute(
            """
            INSERT INTO factor_operation_postings (
                operation_id, posting_type, posting_key, ar_title_id, ap_title_id,
                amount, metadata, tenant_id, created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (operation_id, posting_key) DO NOTHING
            """,
            (
                data["operation_id"],
                data["posting_type"],
                data["posting_key"],
                data.get("ar_title_id"),
                data.get("ap_title_id"),
                data["amount"],
                _json_param(data.get("metadata")),
                self.tenant_id,
                user_id,
            ),
        )
        return int(cursor.rowcount or 0) > 0

    def list_postings(self, db, operation_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM factor_operation_postings
            WHERE operation_id = ? AND tenant_id = ?
            ORDER BY id ASC
            """,
            (operation_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def create_ap_title(
        self,
        db,
        *,
        supplier_id: int,
        amount_total: Any,
        issue_date: str,
        document_number: str,
        description: str,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO ap_titles (supplier_id, document_number, description, amount_total, issue_date, tenant_id)
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (supplier_id, document_number, description, amount_total, issue_date, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def create_ap_installment(self, db, *, ap_title_id: int, amount: Any, due_date: str) -> int:
        cursor = db.execute(
            """
            INSERT INTO ap_installments (ap_title_id, installment_number, due_date, amount_original, amount_open, tenant_id)
            VALUES (?, 1, ?, ?, ?, ?)
            RETURNING id
            """,
            (ap_title_id, due_date, amount, amount, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def list_ap_titles(self, db) -> list[dict]:
        rows = db.execute(
            "SELECT * FROM ap_titles WHERE tenant_id = ? ORDER BY id ASC",
            (self.tenant_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    # Audit

    def insert_audit_log(
        self,
        db,
        *,
        user_id: str | None,
        action: str,
        entity_type: str,
        entity_id: Any,
        details: Dict[str, Any] | None = None,
    ) -> None:
        db.execute(
            """
            INSERT INTO audit_logs (user_id, action, entity_type, entity_id, details, tenant_id)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, action, entity_type, str(entity_id), _json_param(details or {}), self.tenant_id),
        )

    def list_audit_logs(self, db, *, entity_type: str | None = None) -> list[dict]:
        query = "SELECT * FROM audit_logs WHERE tenant_id = ?"
        params: List[Any] = [self.tenant_id]
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)
        rows = db.execute(query + " ORDER BY id ASC", params).fetchall()
        return self.rows_to_dicts(rows)

    # Seed (demo/testes)

    def ensure_tenant(self, db, name: str | None = None) -> None:
        db.execute(
            "INSERT INTO tenants (id, name) VALUES (?, ?) ON CONFLICT (id) DO NOTHING",
            (self.tenant_id, name or f"Empresa {self.tenant_id}"),
        )

    def create_organization(self, db, *, name: str, tax_id: str | None = None) -> int:
        cursor = db.execute(
            "INSERT INTO organizations (name, tax_id, tenant_id) VALUES (?, ?, ?) RETURNING id",
            (name, tax_id, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def create_ar_title(
        self,
        db,
        *,
        customer_id: int | None,
        document_number: str,
        amount_total: Any,
        issue_date: str,
        sales_document_id: int | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO ar_titles (customer_id, sales_document_id, document_number, amount_total, issue_date, tenant_id)
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (customer_id, sales_document_id, document_number, amount_total, issue_date, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def create_ar_installment(
        self,
        db,
        *,
        ar_title_id: int,
        installment_number: int,
        due_date: str,
        amount: Any,
        status: str = "OPEN",
        custody_status: str = "own",
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO ar_installments (
                ar_title_id, installment_number, due_date, amount_original, amount_open,
                status, factor_custody_status, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (ar_title_id, installment_number, due_date, amount, amount, status, custody_status, self.tenant_id),
        )
        return self.inserted_id(cursor)
