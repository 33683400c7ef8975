from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence

from app.contexts.approvals.domain.field_rules import FieldRule
from app.infrastructure.repositories.base import BaseRepository, dumps_json, loads_json, utc_now_iso


class ModificationRuleRepository(BaseRepository):
    def get_settings(self, db) -> dict | None:
        row = db.execute(
            """
            SELECT id, name, notify_all_suppliers, supplier_notification_subject,
                   supplier_notification_body, approver_ids_json, updated_by, updated_at
            FROM modification_rules
            WHERE tenant_id = ?
            LIMIT 1
            """,
            (self.tenant_id,),
        ).fetchone()
        if not row:
            return None
        settings = dict(row)
        settings["approver_ids"] = [int(value) for value in loads_json(settings.pop("approver_ids_json"), [])]
        return settings

    def list_field_rules(self, db) -> List[FieldRule]:
        rows = db.execute(
            """
            SELECT field_key, label, editable, requires_approval, notify_suppliers
            FROM field_rules
            WHERE tenant_id = ?
            ORDER BY id
            """,
            (self.tenant_id,),
        ).fetchall()
        return [
            FieldRule(
                field_key=row["field_key"],
                label=row["label"],
                editable=bool(row["editable"]),
                requires_approval=bool(row["requires_approval"]),
                notify_suppliers=bool(row["notify_suppliers"]),
            )
            for row in rows
        ]

    def replace(
        self,
        db,
        *,
        fields: Sequence[FieldRule],
        approver_ids: Iterable[int],
        notify_all_suppliers: bool,
        subject: str | None,
        body: str | None,
        updated_by: str | None,
    ) -> None:
        now = utc_now_iso()
        approvers_blob = dumps_json(sorted({int(value) for value in approver_ids}))
        cursor = db.execute(
            """
            UPDATE modification_rules
            SET notify_all_suppliers = ?, supplier_notification_subject = ?, supplier_notification_body = ?,
                approver_ids_json = ?, updated_by = ?, updated_at = ?
            WHERE tenant_id = ?
            """,
            (int(notify_all_suppliers), subject, body, approvers_blob, updated_by, now, self.tenant_id),
        )
        if cursor.rowcount == 0:
            db.execute(
                """
                INSERT INTO modification_rules (
                    notify_all_suppliers, supplier_notification_subject, supplier_notification_body,
                    approver_ids_json, updated_by, tenant_id, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (int(notify_all_suppliers), subject, body, approvers_blob, updated_by, self.tenant_id, now),
            )

        db.execute("DELETE FROM field_rules WHERE tenant_id = ?", (self.tenant_id,))
        for rule in fields:
            db.execute(
                """
                INSERT INTO field_rules (field_key, label, editable, requires_approval, notify_suppliers, tenant_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.field_key,
                    rule.label,
                    int(rule.editable),
                    int(rule.requires_approval),
                    int(rule.notify_suppliers),
                    self.tenant_id,
                ),
            )


class ModificationRequestRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        rfq_id: int,
        requested_by: str | None,
        summary: Dict[str, Dict[str, Any]],
        note: str | None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO modification_requests (
                rfq_id, requested_by, requested_at, requested_fields_json, summary_json, note, status, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)
            RETURNING id
            """,
            (
                rfq_id,
                requested_by,
                utc_now_iso(),
                dumps_json(list(summary.keys())),
                dumps_json(summary),
                note,
                self.tenant_id,
            ),
        )
        return self.inserted_id(cursor)

    def get_by_id(self, db, modification_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM modification_requests
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (modification_id, self.tenant_id),
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
            FROM modification_requests
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
        modification_id: int,
        *,
        to_status: str,
        processed_by: str | None,
        decision_note: str | None,
    ) -> bool:
        cursor = db.execute(
            """
            UPDATE modification_requests
            SET status = ?, processed_by = ?, processed_at = ?, decision_note = ?
            WHERE id = ? AND tenant_id = ? AND status = 'pending'
            """,
            (to_status, processed_by, utc_now_iso(), decision_note, modification_id, self.tenant_id),
        )
        return cursor.rowcount > 0
