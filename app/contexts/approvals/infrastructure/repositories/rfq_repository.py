from __future__ import annotations

from typing import Any, Dict, List

from app.infrastructure.repositories.base import BaseRepository, dumps_json, utc_now_iso


class RfqRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        title: str,
        fields: Dict[str, Any],
        suppliers: List[Dict[str, Any]],
        publish_on_approval: bool,
        created_by: str | None,
    ) -> int:
        now = utc_now_iso()
        cursor = db.execute(
            """
            INSERT INTO rfqs (
                title, status, approval_status, publish_on_approval, published,
                fields_json, suppliers_json, created_by, tenant_id, created_at, updated_at
            )
            VALUES (?, 'draft', 'none', ?, 0, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                title,
                int(publish_on_approval),
                dumps_json(fields),
                dumps_json(suppliers),
                created_by,
                self.tenant_id,
                now,
                now,
            ),
        )
        return self.inserted_id(cursor)

    def get_by_id(self, db, rfq_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM rfqs
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (rfq_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_summary(self, db, *, approval_status: str | None = None, limit: int = 120) -> list[dict]:
        params: list[Any] = [self.tenant_id]
        status_clause = ""
        if approval_status:
            status_clause = " AND approval_status = ?"
            params.append(approval_status)
        params.append(int(limit))
        rows = db.execute(
            f"""
            SELECT id, title, status, approval_status, published, publish_on_approval, created_at, updated_at
            FROM rfqs
            WHERE tenant_id = ?{status_clause}
            ORDER BY id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return self.rows_to_dicts(rows)

    def save_content(
        self,
        db,
        rfq_id: int,
        *,
        title: str,
        fields: Dict[str, Any],
        suppliers: List[Dict[str, Any]],
        publish_on_approval: bool,
    ) -> None:
        db.execute(
            """
            UPDATE rfqs
            SET title = ?, fields_json = ?, suppliers_json = ?, publish_on_approval = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (
                title,
                dumps_json(fields),
                dumps_json(suppliers),
                int(publish_on_approval),
                utc_now_iso(),
                rfq_id,
                self.tenant_id,
            ),
        )

    def mark_pending(self, db, rfq_id: int) -> bool:
        cursor = db.execute(
            """
            UPDATE rfqs
            SET approval_status = 'pending', published = 0, status = 'draft',
                approved_by = NULL, approved_at = NULL, approval_note = NULL, updated_at = ?
            WHERE id = ? AND tenant_id = ? AND approval_status <> 'pending'
            """,
            (utc_now_iso(), rfq_id, self.tenant_id),
        )
        return cursor.rowcount > 0

    def finalize_approved(self, db, rfq_id: int, *, approved_by: str | None, note: str | None, published: bool) -> None:
        now = utc_now_iso()
        db.execute(
            """
            UPDATE rfqs
            SET approval_status = 'approved', published = ?, status = ?,
                approved_by = ?, approved_at = ?, approval_note = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (
                int(published),
                "published" if published else "draft",
                approved_by,
                now,
                note,
                now,
                rfq_id,
                self.tenant_id,
            ),
        )

    def finalize_rejected(self, db, rfq_id: int, *, rejected_by: str | None, note: str | None) -> None:
        now = utc_now_iso()
        db.execute(
            """
            UPDATE rfqs
            SET approval_status = 'rejected', published = 0, status = 'rejected',
                approved_by = ?, approved_at = ?, approval_note = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (rejected_by, now, note, now, rfq_id, self.tenant_id),
        )

    def reset_approval(self, db, rfq_id: int) -> None:
        db.execute(
            """
            UPDATE rfqs
            SET approval_status = 'none', published = 0, status = 'draft', updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (utc_now_iso(), rfq_id, self.tenant_id),
        )

    def set_published(self, db, rfq_id: int, published: bool) -> None:
        """A paused RFQ stays paused when it is re-published."""
        db.execute(
            """
            UPDATE rfqs
            SET published = ?,
                status = CASE WHEN ? = 1 AND status = 'paused' THEN 'paused' ELSE ? END,
                updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (
                int(published),
                int(published),
                "published" if published else "draft",
                utc_now_iso(),
                rfq_id,
                self.tenant_id,
            ),
        )

    def pause(self, db, rfq_id: int) -> bool:
        cursor = db.execute(
            """
            UPDATE rfqs
            SET status = 'paused', updated_at = ?
            WHERE id = ? AND tenant_id = ? AND status = 'published' AND published = 1
            """,
            (utc_now_iso(), rfq_id, self.tenant_id),
        )
        return cursor.rowcount > 0

    def resume(self, db, rfq_id: int) -> bool:
        cursor = db.execute(
            """
            UPDATE rfqs
            SET status = 'published', updated_at = ?
            WHERE id = ? AND tenant_id = ? AND status = 'paused'
            """,
            (utc_now_iso(), rfq_id, self.tenant_id),
        )
        return cursor.rowcount > 0
