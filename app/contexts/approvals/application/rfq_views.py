from __future__ import annotations

from typing import Any, Dict, List, Mapping, Tuple

from app.contexts.approvals.domain.supplier_refs import (
    InlineSupplier,
    Recipient,
    SupplierById,
    dedupe_recipients,
    parse_supplier_refs,
    refs_to_payload,
)
from app.domain.contracts import json_flag
from app.infrastructure.repositories.base import loads_json


# Governed fields stored in their own columns; everything else lives in fields_json.
COLUMN_FIELDS = ("title", "publishOnApproval", "suppliersSelected")


def governed_values(rfq: Mapping[str, Any]) -> Dict[str, Any]:
    """Flat view of an RFQ as seen by field rules and step conditions."""
    values: Dict[str, Any] = dict(loads_json(rfq.get("fields_json"), {}))
    values["title"] = rfq.get("title") or ""
    values["publishOnApproval"] = bool(rfq.get("publish_on_approval"))
    values["suppliersSelected"] = loads_json(rfq.get("suppliers_json"), [])
    values["rfqId"] = rfq.get("id")
    return values


def split_governed(values: Mapping[str, Any]) -> Tuple[str, Dict[str, Any], List[Dict[str, Any]], bool]:
    fields = {key: value for key, value in values.items() if key not in COLUMN_FIELDS and key != "rfqId"}
    suppliers = refs_to_payload(parse_supplier_refs(values.get("suppliersSelected") or []))
    return (
        str(values.get("title") or ""),
        fields,
        suppliers,
        bool(values.get("publishOnApproval")),
    )


def normalize_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    normalized = dict(changes)
    if "suppliersSelected" in normalized:
        normalized["suppliersSelected"] = refs_to_payload(parse_supplier_refs(normalized["suppliersSelected"]))
    if "publishOnApproval" in normalized:
        normalized["publishOnApproval"] = json_flag(
            normalized["publishOnApproval"], name="publishOnApproval", default=False
        )
    return normalized


def rfq_payload(rfq: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": rfq.get("id"),
        "title": rfq.get("title"),
        "status": rfq.get("status"),
        "approvalStatus": rfq.get("approval_status"),
        "published": bool(rfq.get("published")),
        "paused": rfq.get("status") == "paused",
        "publishOnApproval": bool(rfq.get("publish_on_approval")),
        "approvedBy": rfq.get("approved_by"),
        "approvedAt": rfq.get("approved_at"),
        "approvalNote": rfq.get("approval_note"),
        "fields": loads_json(rfq.get("fields_json"), {}),
        "suppliersSelected": loads_json(rfq.get("suppliers_json"), []),
        "createdBy": rfq.get("created_by"),
        "createdAt": rfq.get("created_at"),
        "updatedAt": rfq.get("updated_at"),
    }


def mail_view(rfq: Mapping[str, Any]) -> Dict[str, Any]:
    return {"id": rfq.get("id"), "title": rfq.get("title"), "fields": loads_json(rfq.get("fields_json"), {})}


def _as_supplier_id(value: str) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def resolve_recipients(db, suppliers_repo, rfq: Mapping[str, Any]) -> List[Recipient]:
    refs = parse_supplier_refs(loads_json(rfq.get("suppliers_json"), []))
    lookup_ids = [
        _as_supplier_id(ref.supplier_id)
        for ref in refs
        if isinstance(ref, SupplierById) or (isinstance(ref, InlineSupplier) and not ref.email)
    ]
    registry = suppliers_repo.get_many(db, [value for value in lookup_ids if value is not None])

    recipients: List[Recipient] = []
    for ref in refs:
        if isinstance(ref, InlineSupplier) and ref.email:
            recipients.append(Recipient(supplier_id=ref.supplier_id, email=ref.email))
            continue
        known = registry.get(_as_supplier_id(ref.supplier_id)) or {}
        recipients.append(Recipient(supplier_id=ref.supplier_id, email=str(known.get("email") or "").strip().lower()))
    return dedupe_recipients(recipients)
