from __future__ import annotations

import re

from flask import current_app

from app.contexts.approvals.application.rfq_views import COLUMN_FIELDS, rfq_payload
from app.contexts.approvals.domain.supplier_refs import parse_supplier_refs, refs_to_payload
from app.contexts.approvals.infrastructure.repositories import RfqRepository, SupplierRepository
from app.contexts.notifications.infrastructure.tokens import PURPOSE_QUOTE, InvalidTokenError, TokenService
from app.domain.contracts import Actor, RfqCreateInput, ServiceOutput, SupplierCreateInput
from app.errors import ConflictError, NotFoundError, ValidationError


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def supplier_payload(row: dict) -> dict:
    return {"id": row["id"], "name": row["name"], "email": row.get("email")}


class RfqService:
    def create_rfq(self, db, *, tenant_id: str, create_input: RfqCreateInput, actor: Actor) -> ServiceOutput:
        title = (create_input.title or "").strip()
        if not title:
            raise ValidationError(code="validation_error", details="title is required")
        if not isinstance(create_input.fields, dict):
            raise ValidationError(code="validation_error", details="fields must be an object")

        fields = {key: value for key, value in create_input.fields.items() if key not in COLUMN_FIELDS}
        suppliers = refs_to_payload(parse_supplier_refs(create_input.suppliers or []))
        repository = RfqRepository(tenant_id=tenant_id)
        rfq_id = repository.create(
            db,
            title=title,
            fields=fields,
            suppliers=suppliers,
            publish_on_approval=bool(create_input.publish_on_approval),
            created_by=actor.email,
        )
        db.commit()
        current_app.logger.info(
            "rfq_created",
            extra={"tenant_id": tenant_id, "rfq_id": rfq_id, "supplier_count": len(suppliers), "actor": actor.email},
        )
        return ServiceOutput(rfq_payload(repository.get_by_id(db, rfq_id) or {}), 201)

    def get_rfq(self, db, *, tenant_id: str, rfq_id: int) -> ServiceOutput:
        rfq = RfqRepository(tenant_id=tenant_id).get_by_id(db, rfq_id)
        if not rfq:
            raise NotFoundError(code="rfq_not_found")
        return ServiceOutput(rfq_payload(rfq))

    def list_rfqs(self, db, *, tenant_id: str, approval_status: str | None = None) -> ServiceOutput:
        rows = RfqRepository(tenant_id=tenant_id).list_summary(db, approval_status=approval_status)
        items = [
            {
                "id": row["id"],
                "title": row["title"],
                "status": row["status"],
                "approvalStatus": row["approval_status"],
                "published": bool(row["published"]),
                "publishOnApproval": bool(row["publish_on_approval"]),
                "createdAt": row["created_at"],
                "updatedAt": row["updated_at"],
            }
            for row in rows
        ]
        return ServiceOutput({"items": items})

    def create_supplier(self, db, *, tenant_id: str, create_input: SupplierCreateInput) -> ServiceOutput:
        name = (create_input.name or "").strip()
        email = (create_input.email or "").strip().lower() or None
        if not name:
            raise ValidationError(code="validation_error", details="name is required")
        if email and not _EMAIL_PATTERN.match(email):
            raise ValidationError(code="validation_error", details="email is not valid")
        repository = SupplierRepository(tenant_id=tenant_id)
        supplier_id = repository.create(db, name=name, email=email)
        db.commit()
        return ServiceOutput(supplier_payload(repository.get_by_id(db, supplier_id) or {}), 201)

    def list_suppliers(self, db, *, tenant_id: str) -> ServiceOutput:
        rows = SupplierRepository(tenant_id=tenant_id).list_all(db)
        return ServiceOutput({"items": [supplier_payload(row) for row in rows]})

    def quote_access(self, db, *, token: str) -> ServiceOutput:
        """Resolve a supplier's quote link back to the RFQ it was issued for."""
        try:
            claims = TokenService.from_config(current_app.config).verify(token, purpose=PURPOSE_QUOTE)
        except InvalidTokenError as exc:
            raise ValidationError(code="invalid_token", details=str(exc)) from exc

        tenant_id = str(claims.get("tenant_id") or "").strip()
        if not tenant_id:
            raise ValidationError(code="invalid_token", details="token is missing its workspace")
        rfq = RfqRepository(tenant_id=tenant_id).get_by_id(db, int(claims.get("rfqId") or 0))
        if not rfq or not bool(rfq.get("published")):
            raise NotFoundError(code="rfq_not_found")
        if rfq.get("status") == "paused":
            raise ConflictError(code="rfq_paused")
        payload = rfq_payload(rfq)
        return ServiceOutput(
            {
                "rfq": {
                    "id": payload["id"],
                    "title": payload["title"],
                    "fields": payload["fields"],
                },
                "supplierId": claims.get("supplierId"),
                "expiresAt": claims.get("exp"),
            }
        )
