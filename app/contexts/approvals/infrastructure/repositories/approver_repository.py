from __future__ import annotations

from typing import Iterable

from app.infrastructure.repositories.base import BaseRepository, utc_now_iso


class ApproverRepository(BaseRepository):
    def create(self, db, *, name: str, email: str, role: str) -> int:
        now = utc_now_iso()
        cursor = db.execute(
            """
            INSERT INTO approvers (name, email, role, tenant_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (name, email, role, self.tenant_id, now, now),
        )
        return self.inserted_id(cursor)

    def update(self, db, approver_id: int, *, name: str, email: str, role: str) -> None:
        db.execute(
            """
            UPDATE approvers
            SET name = ?, email = ?, role = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (name, email, role, utc_now_iso(), approver_id, self.tenant_id),
        )

    def delete(self, db, approver_id: int) -> None:
        db.execute(
            "DELETE FROM approvers WHERE id = ? AND tenant_id = ?",
            (approver_id, self.tenant_id),
        )

    def get_by_id(self, db, approver_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT id, name, email, role
            FROM approvers
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (approver_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def get_by_email(self, db, email: str) -> dict | None:
        row = db.execute(
            """
            SELECT id, name, email, role
            FROM approvers
            WHERE LOWER(email) = LOWER(?) AND tenant_id = ?
            LIMIT 1
            """,
            (email, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def find_by_name_or_role(self, db, *, name: str | None, role: str | None) -> dict | None:
        if name:
            row = db.execute(
                """
                SELECT id, name, email, role
                FROM approvers
                WHERE LOWER(name) = LOWER(?) AND tenant_id = ?
                ORDER BY id
                LIMIT 1
                """,
                (name, self.tenant_id),
            ).fetchone()
            if row:
                return dict(row)
        if role:
            row = db.execute(
                """
                SELECT id, name, email, role
                FROM approvers
                WHERE LOWER(role) = LOWER(?) AND tenant_id = ?
                ORDER BY id
                LIMIT 1
                """,
                (role, self.tenant_id),
            ).fetchone()
            if row:
                return dict(row)
        return None

    def get_many(self, db, approver_ids: Iterable[int]) -> dict[int, dict]:
        ids = sorted({int(value) for value in approver_ids})
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = db.execute(
            f"""
            SELECT id, name, email, role
            FROM approvers
            WHERE tenant_id = ? AND id IN ({placeholders})
            """,
            (self.tenant_id, *ids),
        ).fetchall()
        return {int(row["id"]): dict(row) for row in rows}

    def list_all(self, db) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, name, email, role
            FROM approvers
            WHERE tenant_id = ?
            ORDER BY name, id
            """,
            (self.tenant_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)
