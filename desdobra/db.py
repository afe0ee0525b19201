import sqlite3
from decimal import Decimal
from typing import Dict, Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


DEFAULT_TENANT_ID = "tenant-demo"

# sqlite3 nao converte Decimal nativamente.
sqlite3.register_adapter(Decimal, float)


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 nao instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def get_read_db():
    if "db_read" not in g:
        db_path = current_app.config.get("DATABASE_READ_URL") or current_app.config["DB_PATH"]
        g.db_read = _connect_database(db_path)
    return g.db_read


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()
    db_read = g.pop("db_read", None)
    if db_read is not None:
        db_read.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
    else:
        _init_db_sqlite(db)
    db.commit()


_COLUMN_TYPES: Dict[str, Dict[str, str]] = {
    "sqlite": {
        "pk": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "fk": "INTEGER",
        "money": "REAL",
        "rate": "REAL",
        "date": "TEXT",
        "ts": "TEXT",
        "json": "TEXT",
        "bool": "INTEGER",
        "false": "0",
        "true": "1",
    },
    "postgres": {
        "pk": "BIGSERIAL PRIMARY KEY",
        "fk": "BIGINT",
        "money": "NUMERIC(14,2)",
        "rate": "NUMERIC(9,4)",
        "date": "DATE",
        "ts": "TIMESTAMPTZ",
        "json": "JSONB",
        "bool": "BOOLEAN",
        "false": "FALSE",
        "true": "TRUE",
    },
}


# Dropped in reverse order by the baseline migration.
SCHEMA_TABLES: List[str] = [
    "tenants",
    "organizations",
    "factors",
    "ar_titles",
    "ar_installments",
    "ap_titles",
    "ap_installments",
    "factor_operations",
    "factor_operation_items",
    "factor_operation_versions",
    "factor_operation_responses",
    "factor_operation_postings",
    "audit_logs",
]


_SCHEMA_DDL: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organizations (
        id {pk},
        name TEXT NOT NULL,
        tax_id TEXT,
        tenant_id TEXT NOT NULL,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS factors (
        id {pk},
        organization_id {fk} REFERENCES organizations(id),
        name TEXT NOT NULL,
        code TEXT,
        default_interest_rate {rate} NOT NULL DEFAULT 0,
        default_fee_rate {rate} NOT NULL DEFAULT 0,
        default_iof_rate {rate} NOT NULL DEFAULT 0,
        default_other_cost_rate {rate} NOT NULL DEFAULT 0,
        default_grace_days INTEGER NOT NULL DEFAULT 0,
        default_auto_settle_buyback {bool} NOT NULL DEFAULT {false},
        is_active {bool} NOT NULL DEFAULT {true},
        notes TEXT,
        tenant_id TEXT NOT NULL,
        created_by TEXT,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ar_titles (
        id {pk},
        customer_id {fk} REFERENCES organizations(id),
        sales_document_id {fk},
        document_number TEXT,
        amount_total {money} NOT NULL DEFAULT 0,
        issue_date {date},
        tenant_id TEXT NOT NULL,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ar_installments (
        id {pk},
        ar_title_id {fk} NOT NULL REFERENCES ar_titles(id),
        installment_number INTEGER NOT NULL,
        due_date {date} NOT NULL,
        amount_original {money} NOT NULL DEFAULT 0,
        amount_open {money} NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'OPEN' CHECK (
            status IN ('OPEN','PARTIAL','OVERDUE','PAID','CANCELLED','SETTLED')
        ),
        factor_custody_status TEXT NOT NULL DEFAULT 'own' CHECK (
            factor_custody_status IN ('own','with_factor','repurchased')
        ),
        factor_id {fk} REFERENCES factors(id),
        factor_operation_item_id {fk},
        factor_assigned_at {ts},
        factor_released_at {ts},
        tenant_id TEXT NOT NULL,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ap_titles (
        id {pk},
        supplier_id {fk} REFERENCES organizations(id),
        document_number TEXT,
        description TEXT,
        amount_total {money} NOT NULL DEFAULT 0,
        issue_date {date},
        status TEXT NOT NULL DEFAULT 'OPEN',
        tenant_id TEXT NOT NULL,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ap_installments (
        id {pk},
        ap_title_id {fk} NOT NULL REFERENCES ap_titles(id),
        installment_number INTEGER NOT NULL DEFAULT 1,
        due_date {date} NOT NULL,
        amount_original {money} NOT NULL DEFAULT 0,
        amount_open {money} NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'OPEN',
        tenant_id TEXT NOT NULL,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS factor_operations (
        id {pk},
        factor_id {fk} NOT NULL REFERENCES factors(id),
        operation_number INTEGER NOT NULL,
        reference TEXT,
        issue_date {date} NOT NULL,
        expected_settlement_date {date},
        settlement_account_id {fk},
        status TEXT NOT NULL DEFAULT 'draft' CHECK (
            status IN ('draft','sent_to_factor','in_adjustment','completed')
        ),
        gross_amount {money} NOT NULL DEFAULT 0,
        costs_amount {money} NOT NULL DEFAULT 0,
        net_amount {money} NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'BRL',
        version_counter INTEGER NOT NULL DEFAULT 0,
        current_version_id {fk},
        sent_at {ts},
        sent_by TEXT,
        last_response_at {ts},
        completed_at {ts},
        completed_by TEXT,
        notes TEXT,
        tenant_id TEXT NOT NULL,
        created_by TEXT,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (tenant_id, operation_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS factor_operation_items (
        id {pk},
        operation_id {fk} NOT NULL REFERENCES factor_operations(id),
        line_no INTEGER NOT NULL,
        action_type TEXT NOT NULL CHECK (
            action_type IN ('discount','buyback','due_date_change')
        ),
        ar_installment_id {fk} NOT NULL REFERENCES ar_installments(id),
        ar_title_id {fk} NOT NULL REFERENCES ar_titles(id),
        sales_document_id {fk},
        customer_id {fk},
        installment_number_snapshot INTEGER NOT NULL,
        due_date_snapshot {date} NOT NULL,
        amount_snapshot {money} NOT NULL,
        proposed_due_date {date},
        buyback_settle_now {bool} NOT NULL DEFAULT {false},
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending','accepted','rejected','adjusted')
        ),
        final_amount {money},
        final_due_date {date},
        notes TEXT,
        tenant_id TEXT NOT NULL,
        created_by TEXT,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (operation_id, line_no)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS factor_operation_versions (
        id {pk},
        operation_id {fk} NOT NULL REFERENCES factor_operations(id),
        version_number INTEGER NOT NULL,
        source_status TEXT NOT NULL,
        total_items INTEGER NOT NULL DEFAULT 0,
        gross_amount {money} NOT NULL DEFAULT 0,
        costs_amount {money} NOT NULL DEFAULT 0,
        net_amount {money} NOT NULL DEFAULT 0,
        snapshot_json {json} NOT NULL,
        tenant_id TEXT NOT NULL,
        created_by TEXT,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (operation_id, version_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS factor_operation_responses (
        id {pk},
        operation_id {fk} NOT NULL REFERENCES factor_operations(id),
        version_id {fk} NOT NULL REFERENCES factor_operation_versions(id),
        operation_item_id {fk} NOT NULL REFERENCES factor_operation_items(id),
        response_status TEXT NOT NULL CHECK (
            response_status IN ('pending','accepted','rejected','adjusted')
        ),
        response_code TEXT,
        response_message TEXT,
        accepted_amount {money},
        adjusted_amount {money},
        adjusted_due_date {date},
        fee_amount {money} NOT NULL DEFAULT 0,
        interest_amount {money} NOT NULL DEFAULT 0,
        iof_amount {money} NOT NULL DEFAULT 0,
        other_cost_amount {money} NOT NULL DEFAULT 0,
        total_cost_amount {money} NOT NULL DEFAULT 0,
        processed_by TEXT,
        tenant_id TEXT NOT NULL,
        imported_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (version_id, operation_item_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS factor_operation_postings (
        id {pk},
        operation_id {fk} NOT NULL REFERENCES factor_operations(id),
        posting_type TEXT NOT NULL CHECK (
            posting_type IN ('ar_discount_settlement','ap_buyback','ap_factor_cost')
        ),
        posting_key TEXT NOT NULL,
        ar_title_id {fk},
        ap_title_id {fk},
        amount {money} NOT NULL,
        metadata {json},
        tenant_id TEXT NOT NULL,
        created_by TEXT,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (operation_id, posting_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id {pk},
        user_id TEXT,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        details {json},
        tenant_id TEXT NOT NULL,
        created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_factor_operations_tenant_status ON factor_operations (tenant_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_factor_items_operation ON factor_operation_items (operation_id, line_no)",
    "CREATE INDEX IF NOT EXISTS idx_factor_responses_operation ON factor_operation_responses (operation_id)",
    "CREATE INDEX IF NOT EXISTS idx_ar_installments_tenant_status ON ar_installments (tenant_id, status, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_entity ON audit_logs (tenant_id, entity_type, entity_id)",
]


def schema_statements(backend: str) -> List[str]:
    types = _COLUMN_TYPES["postgres" if backend == "postgres" else "sqlite"]
    return [statement.format(**types) for statement in _SCHEMA_DDL]


def _create_schema(db, backend: str) -> None:
    for statement in schema_statements(backend):
        db.execute(statement)
    db.execute(
        "INSERT INTO tenants (id, name) VALUES (?, ?) ON CONFLICT (id) DO NOTHING",
        (DEFAULT_TENANT_ID, "Empresa demo"),
    )


def _init_db_sqlite(db):
    _create_schema(db, "sqlite")


def _init_db_postgres(db) -> None:
    _create_schema(db, "postgres")
