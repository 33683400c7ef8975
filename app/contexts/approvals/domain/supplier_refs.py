from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Union

from app.errors import ValidationError


@dataclass(frozen=True)
class SupplierById:
    supplier_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": "id", "id": self.supplier_id}


@dataclass(frozen=True)
class InlineSupplier:
    name: str = ""
    email: str = ""
    supplier_id: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": "inline", "id": self.supplier_id, "name": self.name, "email": self.email}


SupplierRef = Union[SupplierById, InlineSupplier]


@dataclass(frozen=True)
class Recipient:
    supplier_id: str
    email: str


def _first_text(*values: Any) -> str:
    for value in values:
        text = str(value or "").strip()
        if text:
            return text
    return ""


def parse_supplier_ref(raw: Any) -> SupplierRef:
    if isinstance(raw, (SupplierById, InlineSupplier)):
        return raw
    if isinstance(raw, bool) or raw is None:
        raise ValidationError(code="validation_error", details="invalid supplier reference")
    if isinstance(raw, (str, int)):
        supplier_id = str(raw).strip()
        if not supplier_id:
            raise ValidationError(code="validation_error", details="empty supplier reference")
        return SupplierById(supplier_id=supplier_id)
    if isinstance(raw, dict):
        if raw.get("kind") == "id":
            return SupplierById(supplier_id=_first_text(raw.get("id")))
        user = raw.get("user") if isinstance(raw.get("user"), dict) else {}
        supplier_id = _first_text(raw.get("id"), raw.get("supplierId"), raw.get("supplier_id"))
        email = _first_text(raw.get("email"), raw.get("registrationEmail"), user.get("email"))
        name = _first_text(raw.get("name"), raw.get("companyName"))
        if not email and supplier_id:
            return SupplierById(supplier_id=supplier_id)
        if not email and not supplier_id:
            raise ValidationError(code="validation_error", details="supplier reference needs an id or email")
        return InlineSupplier(name=name, email=email.lower(), supplier_id=supplier_id)
    raise ValidationError(code="validation_error", details="invalid supplier reference")


def parse_supplier_refs(raw: Any) -> List[SupplierRef]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(code="validation_error", details="suppliersSelected must be a list")
    return [parse_supplier_ref(item) for item in raw]


def refs_to_payload(refs: Iterable[SupplierRef]) -> List[Dict[str, Any]]:
    return [ref.to_payload() for ref in refs]


def dedupe_recipients(recipients: Iterable[Recipient]) -> List[Recipient]:
    seen: set[str] = set()
    unique: List[Recipient] = []
    for recipient in recipients:
        key = recipient.email.lower() if recipient.email else f"id:{recipient.supplier_id}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(recipient)
    return unique
