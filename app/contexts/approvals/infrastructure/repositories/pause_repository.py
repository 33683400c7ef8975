from __future__ import annotations

from typing import Any

from app.infrastructure.repositories.base import BaseRepository, utc_now_iso


class PauseRequestRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        rfq_id: int,
        requested_by: str | None,
        reason: str | None,
        notify_suppliers: bool,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO pause_requests (rfq_id, requested_by, requested_at, reason, notify_suppliers, status, tenant_id)
            VALUES (?, ?, ?, ?, ?, 'pending', ?)
            RETURNING id
            """,
            (rfq_id, requested_by, utc_now_iso(), reason, int(notify_suppliers), self.tenant_id),
        )
        return self.inserted_id(cursor)

    def get_by_id(self, db, request_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM pause_requests
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (request_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def pending_for_rfq(self, db, rfq_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM pause_requests
            WHERE rfq_id = ? AND tenant_id = ? AND status = 'pending'
            ORDER BY id
            LIMIT 1
            """,
            (rfq_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_requests(self, db, *, status: str | None = None, rfq_id: int | None = None, limit: int = 200) -> list[dict]:
        clauses = ["tenant_id = ?"]
        params: list[Any] = [self.tenant_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        if rfq_id:
            clauses.append("rfq_id = ?")
            params.append(int(rfq_id))
        params.append(int(limit))
        rows = db.execute(
            f"""
            SELECT *
            FROM pause_requests
            WHERE {' AND '.join(clauses)}
            ORDER BY id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return self.rows_to_dicts(rows)

    def transition(
        self,
        db,
        request_id: int,
        *,
        to_status: str,
        processed_by: str | None,
        decision_note: str | None,
    ) -> bool:
        cursor = db.execute(
            """
            UPDATE pause_requests
            SET status = ?, processed_by = ?, processed_at = ?, decision_note = ?
            WHERE id = ? AND tenant_id = ? AND status = 'pending'
            """,
            (to_status, processed_by, utc_now_iso(), decision_note, request_id, self.tenant_id),
        )
        return cursor.rowcount > 0
