from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping

from app.errors import ValidationError


EDIT_REJECT = "reject"
EDIT_QUEUE = "queue"
EDIT_APPLY = "apply"

UNKNOWN_FIELD_REQUIRE_APPROVAL = "require_approval"
UNKNOWN_FIELD_PERMISSIVE = "permissive"


@dataclass(frozen=True)
class FieldRule:
    field_key: str
    label: str
    editable: bool = True
    requires_approval: bool = False
    notify_suppliers: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "fieldKey": self.field_key,
            "label": self.label,
            "editable": self.editable,
            "requiresApproval": self.requires_approval,
            "notifySuppliers": self.notify_suppliers,
        }


# (field_key, label, editable, requires_approval, notify_suppliers)
_CANONICAL_ROWS = (
    ("title", "RFQ Title", True, True, False),
    ("rfqId", "RFQ ID", False, False, False),
    ("openDateTime", "Open Date & Time", False, False, False),
    ("closeDateTime", "Close Date & Time", True, True, True),
    ("closeDateType", "Close Date Type", True, True, False),
    ("daysAfterOpen", "Days After Open", True, True, False),
    ("needByDate", "Need By Date", True, False, False),
    ("requesterReference", "Requester Reference", True, False, False),
    ("shippingAddress", "Shipping Address", True, False, False),
    ("paymentProcess", "Payment Process", True, False, False),
    ("currency", "Currency", True, False, False),
    ("shippingType", "Shipping Type", True, False, False),
    ("carrier", "Carrier", True, False, False),
    ("negotiationControls", "Negotiation Controls", True, True, True),
    ("incoterms", "Incoterms", True, False, False),
    ("noteToSupplier", "Note to Supplier", True, False, True),
    ("productSpecification", "Product Specification", True, False, False),
    ("categoryIds", "Categories", True, True, True),
    ("items", "Line Items", True, True, True),
    ("suppliersSelected", "Selected Suppliers", True, True, True),
    ("publishOnApproval", "Publish on Approval", True, True, False),
    ("attachmentPath", "Attachment", True, False, False),
    ("requester", "Requester", False, False, False),
    ("productCategory", "Product Category", True, False, False),
    ("uoms", "Units of Measure", True, False, False),
    ("budget", "Budget", True, True, False),
)

CANONICAL_FIELD_RULES: tuple[FieldRule, ...] = tuple(
    FieldRule(
        field_key=key,
        label=label,
        editable=editable,
        requires_approval=requires_approval,
        notify_suppliers=notify_suppliers,
    )
    for key, label, editable, requires_approval, notify_suppliers in _CANONICAL_ROWS
)


@dataclass(frozen=True)
class ModificationPolicy:
    rules: Mapping[str, FieldRule]
    notify_all_suppliers: bool = False
    unknown_field_policy: str = UNKNOWN_FIELD_REQUIRE_APPROVAL

    def rule_for(self, field_key: str) -> FieldRule:
        rule = self.rules.get(field_key)
        if rule is not None:
            return rule
        if self.unknown_field_policy == UNKNOWN_FIELD_PERMISSIVE:
            return FieldRule(field_key=field_key, label=field_key)
        return FieldRule(field_key=field_key, label=field_key, requires_approval=True)


@dataclass(frozen=True)
class EditDecision:
    field_key: str
    outcome: str
    current_value: Any = None
    proposed_value: Any = None
    notify_suppliers: bool = False

    def summary_entry(self) -> Dict[str, Any]:
        return {"from": self.current_value, "to": self.proposed_value}


def build_rule_index(rules: Iterable[FieldRule]) -> Dict[str, FieldRule]:
    index: Dict[str, FieldRule] = {}
    duplicates: List[str] = []
    for rule in rules:
        key = str(rule.field_key or "").strip()
        if not key:
            raise ValidationError(code="validation_error", details="fieldKey is required")
        if key in index:
            duplicates.append(key)
            continue
        index[key] = rule
    if duplicates:
        raise ValidationError(
            code="duplicate_field_key",
            payload={"fields": sorted(set(duplicates))},
        )
    return index


def evaluate_edit(policy: ModificationPolicy, field_key: str, proposed_value: Any, current_value: Any) -> EditDecision:
    rule = policy.rule_for(field_key)
    if not rule.editable:
        return EditDecision(field_key=field_key, outcome=EDIT_REJECT, current_value=current_value)

    notify = bool(rule.notify_suppliers or policy.notify_all_suppliers)
    outcome = EDIT_QUEUE if rule.requires_approval else EDIT_APPLY
    return EditDecision(
        field_key=field_key,
        outcome=outcome,
        current_value=current_value,
        proposed_value=proposed_value,
        notify_suppliers=notify,
    )


def evaluate_changes(
    policy: ModificationPolicy,
    changes: Mapping[str, Any],
    current: Mapping[str, Any],
) -> List[EditDecision]:
    """Evaluate a batch of edits; raises before anything is applied if one is refused."""
    decisions = [
        evaluate_edit(policy, key, value, current.get(key))
        for key, value in changes.items()
        if current.get(key) != value
    ]
    refused = [decision.field_key for decision in decisions if decision.outcome == EDIT_REJECT]
    if refused:
        raise ValidationError(code="field_not_editable", payload={"fields": refused})
    if not decisions:
        raise ValidationError(code="no_changes")
    return decisions


def should_notify_on_approval(policy: ModificationPolicy, field_keys: Iterable[str]) -> bool:
    if policy.notify_all_suppliers:
        return True
    return any(policy.rule_for(key).notify_suppliers for key in field_keys)
