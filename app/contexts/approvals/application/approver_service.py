from __future__ import annotations

import re

from app.contexts.approvals.infrastructure.repositories import (
    ApproverRepository,
    ModificationRuleRepository,
    WorkflowTemplateRepository,
)
from app.domain.contracts import ApproverInput, ServiceOutput
from app.errors import ConflictError, NotFoundError, ValidationError


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def approver_payload(row: dict) -> dict:
    return {"id": row["id"], "name": row["name"], "email": row["email"], "role": row["role"]}


class ApproverService:
    @staticmethod
    def _validated(approver_input: ApproverInput) -> ApproverInput:
        name = (approver_input.name or "").strip()
        email = (approver_input.email or "").strip().lower()
        role = (approver_input.role or "").strip()
        missing = [label for label, value in (("name", name), ("email", email), ("role", role)) if not value]
        if missing:
            raise ValidationError(code="validation_error", details=f"missing: {', '.join(missing)}")
        if not _EMAIL_PATTERN.match(email):
            raise ValidationError(code="validation_error", details="email is not valid")
        return ApproverInput(name=name, email=email, role=role)

    def list_approvers(self, db, *, tenant_id: str) -> ServiceOutput:
        rows = ApproverRepository(tenant_id=tenant_id).list_all(db)
        return ServiceOutput({"items": [approver_payload(row) for row in rows]})

    def get_approver(self, db, *, tenant_id: str, approver_id: int) -> ServiceOutput:
        row = ApproverRepository(tenant_id=tenant_id).get_by_id(db, approver_id)
        if not row:
            raise NotFoundError(code="approver_not_found")
        return ServiceOutput(approver_payload(row))

    def create_approver(self, db, *, tenant_id: str, approver_input: ApproverInput) -> ServiceOutput:
        data = self._validated(approver_input)
        repository = ApproverRepository(tenant_id=tenant_id)
        if repository.get_by_email(db, data.email):
            raise ConflictError(code="approver_email_taken", payload={"email": data.email})
        approver_id = repository.create(db, name=data.name, email=data.email, role=data.role)
        return ServiceOutput(approver_payload(repository.get_by_id(db, approver_id) or {}), 201)

    def update_approver(self, db, *, tenant_id: str, approver_id: int, approver_input: ApproverInput) -> ServiceOutput:
        repository = ApproverRepository(tenant_id=tenant_id)
        current = repository.get_by_id(db, approver_id)
        if not current:
            raise NotFoundError(code="approver_not_found")
        data = self._validated(
            ApproverInput(
                name=approver_input.name or current["name"],
                email=approver_input.email or current["email"],
                role=approver_input.role or current["role"],
            )
        )
        owner = repository.get_by_email(db, data.email)
        if owner and int(owner["id"]) != int(approver_id):
            raise ConflictError(code="approver_email_taken", payload={"email": data.email})
        repository.update(db, approver_id, name=data.name, email=data.email, role=data.role)
        return ServiceOutput(approver_payload(repository.get_by_id(db, approver_id) or {}))

    def delete_approver(self, db, *, tenant_id: str, approver_id: int) -> ServiceOutput:
        repository = ApproverRepository(tenant_id=tenant_id)
        if not repository.get_by_id(db, approver_id):
            raise NotFoundError(code="approver_not_found")

        template_refs = WorkflowTemplateRepository(tenant_id=tenant_id).count_approver_references(db, approver_id)
        rules = ModificationRuleRepository(tenant_id=tenant_id).get_settings(db) or {}
        in_rules = int(approver_id) in set(rules.get("approver_ids") or [])
        if template_refs or in_rules:
            raise ConflictError(
                code="approver_in_use",
                payload={"template_steps": template_refs, "modification_rules": in_rules},
            )
        repository.delete(db, approver_id)
        return ServiceOutput({"id": approver_id, "deleted": True})
