"""Approval workflow schema baseline from app.db

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from app.db import _convert_qmark_to_pg, _init_db_postgres, _init_db_sqlite, table_names


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


class _ResultAdapter:
    def __init__(self, result):
        self._result = result

    @staticmethod
    def _map_row(row):
        if row is None:
            return None
        if isinstance(row, dict):
            return row
        mapping = getattr(row, "_mapping", None)
        if mapping is not None:
            return dict(mapping)
        return row

    def fetchone(self):
        return self._map_row(self._result.fetchone())

    def fetchall(self):
        rows = self._result.fetchall()
        return [self._map_row(row) for row in rows]


class _AlembicDbAdapter:
    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        statement = sql
        if params is None:
            result = self._connection.exec_driver_sql(statement)
            return _ResultAdapter(result)

        values = tuple(params)
        if self.backend == "postgres":
            statement = _convert_qmark_to_pg(statement)
        result = self._connection.exec_driver_sql(statement, values)
        return _ResultAdapter(result)

    def commit(self):
        # Alembic owns the transaction.
        return None

    def close(self):
        return None


def _resolve_backend(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    backend = _resolve_backend(connection)
    adapter = _AlembicDbAdapter(connection, backend)

    if backend == "postgres":
        _init_db_postgres(adapter)
        return

    _init_db_sqlite(adapter)


def downgrade() -> None:
    connection = op.get_bind()
    backend = _resolve_backend(connection)
    suffix = " CASCADE" if backend == "postgres" else ""
    for table in reversed(table_names()):
        op.execute(f"DROP TABLE IF EXISTS {table}{suffix}")
