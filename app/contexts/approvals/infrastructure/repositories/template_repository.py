from __future__ import annotations

from typing import Sequence

from app.contexts.approvals.domain.workflow import StepDefinition, WorkflowSettings, WorkflowTemplate
from app.infrastructure.repositories.base import BaseRepository, utc_now_iso


class WorkflowTemplateRepository(BaseRepository):
    def _header(self, db) -> dict | None:
        row = db.execute(
            """
            SELECT id, default_sla, allow_parallel, send_reminders, config_version, updated_by, updated_at
            FROM workflow_templates
            WHERE tenant_id = ?
            LIMIT 1
            """,
            (self.tenant_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def _ensure_header(self, db) -> dict:
        header = self._header(db)
        if header:
            return header
        now = utc_now_iso()
        db.execute(
            """
            INSERT INTO workflow_templates (tenant_id, created_at, updated_at)
            VALUES (?, ?, ?)
            """,
            (self.tenant_id, now, now),
        )
        return self._header(db) or {}

    def load(self, db) -> WorkflowTemplate:
        header = self._header(db)
        if not header:
            return WorkflowTemplate()
        rows = db.execute(
            """
            SELECT s.step_order, s.role, s.approver_id, s.approver_name, s.sla_duration,
                   s.condition_text, s.condition_type, s.condition_operator, s.condition_value,
                   s.is_required, a.email AS approver_email, a.name AS current_approver_name
            FROM workflow_template_steps s
            LEFT JOIN approvers a ON a.id = s.approver_id AND a.tenant_id = s.tenant_id
            WHERE s.template_id = ? AND s.tenant_id = ?
            ORDER BY s.step_order
            """,
            (header["id"], self.tenant_id),
        ).fetchall()
        steps = tuple(
            StepDefinition(
                order=int(row["step_order"]),
                role=row["role"],
                approver_id=int(row["approver_id"]),
                approver_name=row["current_approver_name"] or row["approver_name"] or "",
                approver_email=row["approver_email"] or "",
                sla_duration=row["sla_duration"] or "",
                condition=row["condition_text"] or "",
                condition_type=row["condition_type"] or "",
                condition_operator=row["condition_operator"] or "",
                condition_value=row["condition_value"] or "",
                is_required=bool(row["is_required"]),
            )
            for row in rows
        )
        settings = WorkflowSettings(
            default_sla=header["default_sla"],
            allow_parallel=bool(header["allow_parallel"]),
            send_reminders=bool(header["send_reminders"]),
        )
        return WorkflowTemplate(steps=steps, settings=settings, config_version=int(header["config_version"]))

    def replace(
        self,
        db,
        *,
        steps: Sequence[StepDefinition],
        settings: WorkflowSettings,
        updated_by: str | None,
        expected_version: int | None = None,
    ) -> int | None:
        """Swap the whole template; returns the new version or None when the expected version is stale."""
        header = self._ensure_header(db)
        template_id = int(header["id"])
        params = [
            settings.default_sla,
            int(settings.allow_parallel),
            int(settings.send_reminders),
            updated_by,
            utc_now_iso(),
            template_id,
            self.tenant_id,
        ]
        version_clause = ""
        if expected_version is not None:
            version_clause = " AND config_version = ?"
            params.append(int(expected_version))
        cursor = db.execute(
            f"""
            UPDATE workflow_templates
            SET default_sla = ?, allow_parallel = ?, send_reminders = ?,
                config_version = config_version + 1, updated_by = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?{version_clause}
            """,
            params,
        )
        if cursor.rowcount == 0:
            return None

        db.execute(
            "DELETE FROM workflow_template_steps WHERE template_id = ? AND tenant_id = ?",
            (template_id, self.tenant_id),
        )
        for step in steps:
            db.execute(
                """
                INSERT INTO workflow_template_steps (
                    template_id, step_order, role, approver_id, approver_name, sla_duration,
                    condition_text, condition_type, condition_operator, condition_value,
                    is_required, tenant_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    template_id,
                    step.order,
                    step.role,
                    step.approver_id,
                    step.approver_name,
                    step.sla_duration,
                    step.condition,
                    step.condition_type,
                    step.condition_operator,
                    step.condition_value,
                    int(step.is_required),
                    self.tenant_id,
                ),
            )
        refreshed = self._header(db) or {}
        return int(refreshed.get("config_version") or 0)

    def count_approver_references(self, db, approver_id: int) -> int:
        row = db.execute(
            """
            SELECT COUNT(*) AS total
            FROM workflow_template_steps
            WHERE approver_id = ? AND tenant_id = ?
            """,
            (approver_id, self.tenant_id),
        ).fetchone()
        return int(row["total"] or 0) if row else 0

    def send_reminders_enabled(self, db) -> bool:
        header = self._header(db)
        return bool(header["send_reminders"]) if header else True
