from __future__ import annotations

from typing import Any, Dict, Iterable

from app.contexts.approvals.domain.workflow import StepDefinition
from app.infrastructure.repositories.base import BaseRepository, dumps_json, utc_now_iso


_STEP_COLUMNS = """
    id, run_id, rfq_id, step_order, role, approver_id, approver_name, approver_email,
    sla_duration, is_required, status, comments, decided_by, created_at, decided_at, reminded_at
"""


class ApprovalRunRepository(BaseRepository):
    def create_run(
        self,
        db,
        *,
        rfq_id: int,
        status: str,
        allow_parallel: bool,
        template_version: int,
        template_snapshot: Dict[str, Any],
        submitted_by: str | None,
    ) -> int:
        now = utc_now_iso()
        cursor = db.execute(
            """
            INSERT INTO approval_runs (
                rfq_id, status, allow_parallel, template_version, template_snapshot_json,
                submitted_by, tenant_id, created_at, completed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                rfq_id,
                status,
                int(allow_parallel),
                int(template_version),
                dumps_json(template_snapshot),
                submitted_by,
                self.tenant_id,
                now,
                now if status != "PENDING" else None,
            ),
        )
        return self.inserted_id(cursor)

    def add_step(self, db, *, run_id: int, rfq_id: int, step: StepDefinition) -> int:
        cursor = db.execute(
            """
            INSERT INTO approval_steps (
                run_id, rfq_id, step_order, role, approver_id, approver_name, approver_email,
                sla_duration, is_required, status, tenant_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', ?, ?)
            RETURNING id
            """,
            (
                run_id,
                rfq_id,
                step.order,
                step.role,
                step.approver_id,
                step.approver_name,
                step.approver_email,
                step.sla_duration,
                int(step.is_required),
                self.tenant_id,
                utc_now_iso(),
            ),
        )
        return self.inserted_id(cursor)

    def get_run(self, db, run_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT id, rfq_id, status, allow_parallel, template_version, template_snapshot_json,
                   submitted_by, created_at, completed_at
            FROM approval_runs
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (run_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def latest_run_for_rfq(self, db, rfq_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT id, rfq_id, status, allow_parallel, template_version, template_snapshot_json,
                   submitted_by, created_at, completed_at
            FROM approval_runs
            WHERE rfq_id = ? AND tenant_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (rfq_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def get_step(self, db, step_id: int) -> dict | None:
        row = db.execute(
            f"""
            SELECT {_STEP_COLUMNS}
            FROM approval_steps
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (step_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_steps(self, db, run_id: int) -> list[dict]:
        rows = db.execute(
            f"""
            SELECT {_STEP_COLUMNS}
            FROM approval_steps
            WHERE run_id = ? AND tenant_id = ?
            ORDER BY step_order, id
            """,
            (run_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def transition_step(
        self,
        db,
        step_id: int,
        *,
        to_status: str,
        decided_by: str | None,
        comments: str | None,
    ) -> bool:
        cursor = db.execute(
            """
            UPDATE approval_steps
            SET status = ?, decided_by = ?, comments = ?, decided_at = ?
            WHERE id = ? AND tenant_id = ? AND status = 'PENDING'
            """,
            (to_status, decided_by, comments, utc_now_iso(), step_id, self.tenant_id),
        )
        return cursor.rowcount > 0

    def skip_steps(self, db, step_ids: Iterable[int]) -> int:
        skipped = 0
        now = utc_now_iso()
        for step_id in step_ids:
            cursor = db.execute(
                """
                UPDATE approval_steps
                SET status = 'SKIPPED', decided_at = ?
                WHERE id = ? AND tenant_id = ? AND status = 'PENDING'
                """,
                (now, step_id, self.tenant_id),
            )
            skipped += max(0, cursor.rowcount)
        return skipped

    def lock_pending_run(self, db, run_id: int) -> bool:
        """Write-lock a PENDING run so decisions on it apply one at a time; False once it is settled."""
        cursor = db.execute(
            """
            UPDATE approval_runs
            SET status = status
            WHERE id = ? AND tenant_id = ? AND status = 'PENDING'
            """,
            (run_id, self.tenant_id),
        )
        return cursor.rowcount > 0

    def transition_run(self, db, run_id: int, *, from_status: str, to_status: str) -> bool:
        cursor = db.execute(
            """
            UPDATE approval_runs
            SET status = ?, completed_at = ?
            WHERE id = ? AND tenant_id = ? AND status = ?
            """,
            (to_status, utc_now_iso(), run_id, self.tenant_id, from_status),
        )
        return cursor.rowcount > 0

    def pending_steps_for_approver(self, db, email: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT s.id, s.run_id, s.rfq_id, s.step_order, s.role, s.approver_name, s.approver_email,
                   s.sla_duration, s.is_required, s.status, s.created_at, r.allow_parallel, q.title
            FROM approval_steps s
            JOIN approval_runs r ON r.id = s.run_id AND r.tenant_id = s.tenant_id
            JOIN rfqs q ON q.id = s.rfq_id AND q.tenant_id = s.tenant_id
            WHERE s.tenant_id = ? AND LOWER(s.approver_email) = LOWER(?)
              AND s.status = 'PENDING' AND r.status = 'PENDING'
            ORDER BY s.created_at, s.id
            """,
            (self.tenant_id, email),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def pending_runs(self, db, *, after_id: int = 0, limit: int = 200) -> list[dict]:
        """One page of PENDING runs with ids above `after_id`, oldest first."""
        rows = db.execute(
            """
            SELECT id, rfq_id, status, allow_parallel, created_at
            FROM approval_runs
            WHERE tenant_id = ? AND status = 'PENDING' AND id > ?
            ORDER BY id
            LIMIT ?
            """,
            (self.tenant_id, int(after_id), int(limit)),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def mark_reminded(self, db, step_id: int) -> bool:
        cursor = db.execute(
            """
            UPDATE approval_steps
            SET reminded_at = ?
            WHERE id = ? AND tenant_id = ? AND status = 'PENDING' AND reminded_at IS NULL
            """,
            (utc_now_iso(), step_id, self.tenant_id),
        )
        return cursor.rowcount > 0

    @staticmethod
    def tenants_with_pending_runs(db) -> list[str]:
        rows = db.execute(
            "SELECT DISTINCT tenant_id FROM approval_runs WHERE status = 'PENDING' ORDER BY tenant_id"
        ).fetchall()
        return [str(row["tenant_id"]) for row in rows]
