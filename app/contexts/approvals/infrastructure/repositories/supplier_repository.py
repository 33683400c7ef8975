from __future__ import annotations

from typing import Iterable

from app.infrastructure.repositories.base import BaseRepository, utc_now_iso


class SupplierRepository(BaseRepository):
    def create(self, db, *, name: str, email: str | None) -> int:
        cursor = db.execute(
            """
            INSERT INTO suppliers (name, email, tenant_id, created_at)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            (name, email, self.tenant_id, utc_now_iso()),
        )
        return self.inserted_id(cursor)

    def get_by_id(self, db, supplier_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT id, name, email
            FROM suppliers
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (supplier_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def get_many(self, db, supplier_ids: Iterable[int]) -> dict[int, dict]:
        ids = sorted({int(value) for value in supplier_ids})
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = db.execute(
            f"""
            SELECT id, name, email
            FROM suppliers
            WHERE tenant_id = ? AND id IN ({placeholders})
            """,
            (self.tenant_id, *ids),
        ).fetchall()
        return {int(row["id"]): dict(row) for row in rows}

    def list_all(self, db, *, limit: int = 500) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, name, email
            FROM suppliers
            WHERE tenant_id = ?
            ORDER BY name, id
            LIMIT ?
            """,
            (self.tenant_id, int(limit)),
        ).fetchall()
        return self.rows_to_dicts(rows)
