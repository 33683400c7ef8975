import sqlite3
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


DEFAULT_TENANT_ID = "tenant-demo"


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


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def get_read_db():
    if "db_read" not in g:
        db_path = current_app.config.get("DATABASE_READ_URL") or current_app.config["DB_PATH"]
        g.db_read = connect_database(db_path)
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
        return

    _init_db_sqlite(db)


# Table bodies shared by both backends; {pk} is the backend's autoincrement key.
_TABLES = (
    (
        "approvers",
        """
        id {pk},
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        role TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (tenant_id, email)
        """,
    ),
    (
        "workflow_templates",
        """
        id {pk},
        default_sla TEXT NOT NULL DEFAULT '2 business days',
        allow_parallel INTEGER NOT NULL DEFAULT 0,
        send_reminders INTEGER NOT NULL DEFAULT 1,
        config_version INTEGER NOT NULL DEFAULT 0,
        updated_by TEXT,
        tenant_id TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
        """,
    ),
    (
        "workflow_template_steps",
        """
        id {pk},
        template_id INTEGER NOT NULL REFERENCES workflow_templates(id) ON DELETE CASCADE,
        step_order INTEGER NOT NULL,
        role TEXT NOT NULL,
        approver_id INTEGER NOT NULL REFERENCES approvers(id),
        approver_name TEXT,
        sla_duration TEXT,
        condition_text TEXT,
        condition_type TEXT,
        condition_operator TEXT,
        condition_value TEXT,
        is_required INTEGER NOT NULL DEFAULT 1,
        tenant_id TEXT NOT NULL,
        UNIQUE (template_id, step_order)
        """,
    ),
    (
        "suppliers",
        """
        id {pk},
        name TEXT NOT NULL,
        email TEXT,
        tenant_id TEXT NOT NULL,
        created_at TEXT NOT NULL
        """,
    ),
    (
        "rfqs",
        """
        id {pk},
        title TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft' CHECK (
            status IN ('draft','published','paused','rejected','closed')
        ),
        approval_status TEXT NOT NULL DEFAULT 'none' CHECK (
            approval_status IN ('none','pending','approved','rejected')
        ),
        publish_on_approval INTEGER NOT NULL DEFAULT 1,
        published INTEGER NOT NULL DEFAULT 0,
        approved_by TEXT,
        approved_at TEXT,
        approval_note TEXT,
        fields_json TEXT NOT NULL DEFAULT '{{}}',
        suppliers_json TEXT NOT NULL DEFAULT '[]',
        created_by TEXT,
        tenant_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
        """,
    ),
    (
        "approval_runs",
        """
        id {pk},
        rfq_id INTEGER NOT NULL REFERENCES rfqs(id),
        status TEXT NOT NULL DEFAULT 'PENDING' CHECK (
            status IN ('PENDING','APPROVED','REJECTED','WITHDRAWN')
        ),
        allow_parallel INTEGER NOT NULL DEFAULT 0,
        template_version INTEGER NOT NULL DEFAULT 0,
        template_snapshot_json TEXT NOT NULL DEFAULT '{{}}',
        submitted_by TEXT,
        tenant_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        completed_at TEXT
        """,
    ),
    (
        "approval_steps",
        """
        id {pk},
        run_id INTEGER NOT NULL REFERENCES approval_runs(id),
        rfq_id INTEGER NOT NULL,
        step_order INTEGER NOT NULL,
        role TEXT NOT NULL,
        approver_id INTEGER,
        approver_name TEXT,
        approver_email TEXT,
        sla_duration TEXT,
        is_required INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL DEFAULT 'PENDING' CHECK (
            status IN ('PENDING','APPROVED','REJECTED','SKIPPED')
        ),
        comments TEXT,
        decided_by TEXT,
        tenant_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        decided_at TEXT,
        reminded_at TEXT
        """,
    ),
    (
        "modification_rules",
        """
        id {pk},
        name TEXT NOT NULL DEFAULT 'Default Modification Rules',
        notify_all_suppliers INTEGER NOT NULL DEFAULT 0,
        supplier_notification_subject TEXT,
        supplier_notification_body TEXT,
        approver_ids_json TEXT NOT NULL DEFAULT '[]',
        updated_by TEXT,
        tenant_id TEXT NOT NULL UNIQUE,
        updated_at TEXT NOT NULL
        """,
    ),
    (
        "field_rules",
        """
        id {pk},
        field_key TEXT NOT NULL,
        label TEXT NOT NULL,
        editable INTEGER NOT NULL DEFAULT 1,
        requires_approval INTEGER NOT NULL DEFAULT 0,
        notify_suppliers INTEGER NOT NULL DEFAULT 0,
        tenant_id TEXT NOT NULL,
        UNIQUE (tenant_id, field_key)
        """,
    ),
    (
        "modification_requests",
        """
        id {pk},
        rfq_id INTEGER NOT NULL REFERENCES rfqs(id),
        requested_by TEXT,
        requested_at TEXT NOT NULL,
        requested_fields_json TEXT NOT NULL DEFAULT '[]',
        summary_json TEXT NOT NULL DEFAULT '{{}}',
        note TEXT,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending','approved','rejected')
        ),
        processed_by TEXT,
        processed_at TEXT,
        decision_note TEXT,
        tenant_id TEXT NOT NULL
        """,
    ),
    (
        "pause_requests",
        """
        id {pk},
        rfq_id INTEGER NOT NULL REFERENCES rfqs(id),
        requested_by TEXT,
        requested_at TEXT NOT NULL,
        reason TEXT,
        notify_suppliers INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending','approved','rejected')
        ),
        processed_by TEXT,
        processed_at TEXT,
        decision_note TEXT,
        tenant_id TEXT NOT NULL
        """,
    ),
    (
        "notification_outbox",
        """
        id {pk},
        kind TEXT NOT NULL,
        recipient TEXT NOT NULL,
        subject TEXT NOT NULL,
        html_body TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending','running','sent','failed')
        ),
        attempts INTEGER NOT NULL DEFAULT 0,
        next_attempt_at TEXT NOT NULL,
        last_error TEXT,
        tenant_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
        """,
    ),
    (
        "status_events",
        """
        id {pk},
        entity TEXT NOT NULL,
        entity_id INTEGER NOT NULL,
        from_status TEXT,
        to_status TEXT NOT NULL,
        reason TEXT,
        actor TEXT,
        tenant_id TEXT NOT NULL,
        occurred_at TEXT NOT NULL
        """,
    ),
)


_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_approval_runs_rfq ON approval_runs (tenant_id, rfq_id)",
    "CREATE INDEX IF NOT EXISTS idx_approval_steps_run ON approval_steps (run_id, step_order)",
    "CREATE INDEX IF NOT EXISTS idx_approval_steps_approver ON approval_steps (tenant_id, approver_email, status)",
    "CREATE INDEX IF NOT EXISTS idx_modification_requests_rfq ON modification_requests (tenant_id, rfq_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_pause_requests_rfq ON pause_requests (tenant_id, rfq_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_notification_outbox_due ON notification_outbox (status, next_attempt_at)",
    "CREATE INDEX IF NOT EXISTS idx_status_events_entity ON status_events (tenant_id, entity, entity_id)",
)


def _create_tables(db: Database, pk: str) -> None:
    for table, body in _TABLES:
        db.execute(f"CREATE TABLE IF NOT EXISTS {table} ({body.format(pk=pk)})")
    for statement in _INDEXES:
        db.execute(statement)


def _init_db_sqlite(db: Database):
    db.execute("PRAGMA foreign_keys = ON")
    _create_tables(db, "INTEGER PRIMARY KEY AUTOINCREMENT")
    db.commit()


def _init_db_postgres(db: Database) -> None:
    _create_tables(db, "SERIAL PRIMARY KEY")


def table_names() -> List[str]:
    return [table for table, _body in _TABLES]
