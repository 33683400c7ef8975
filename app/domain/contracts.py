from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from app.errors import ValidationError


_TRUE_FLAGS = {"1", "true", "yes", "on"}
_FALSE_FLAGS = {"0", "false", "no", "off"}


def json_flag(value: Any, *, name: str, default: bool | None = None) -> bool | None:
    """JSON booleans, 0/1 and the usual string spellings; anything else is a validation error."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_FLAGS:
            return True
        if normalized in _FALSE_FLAGS:
            return False
    raise ValidationError(code="validation_error", details=f"{name} must be a boolean")


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class Actor:
    email: str
    role: str
    display_name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def matches(self, email: str | None) -> bool:
        return bool(email) and self.email.strip().lower() == str(email).strip().lower()


@dataclass(frozen=True)
class ApproverInput:
    name: str
    email: str
    role: str


@dataclass(frozen=True)
class TemplateSaveInput:
    steps: List[Dict[str, Any]]
    default_sla: str | None = None
    allow_parallel: bool = False
    send_reminders: bool = True
    expected_version: int | None = None


@dataclass(frozen=True)
class SupplierCreateInput:
    name: str
    email: str | None


@dataclass(frozen=True)
class RfqCreateInput:
    title: str
    fields: Dict[str, Any] = field(default_factory=dict)
    suppliers: List[Any] = field(default_factory=list)
    publish_on_approval: bool = True


@dataclass(frozen=True)
class RfqEditInput:
    rfq_id: int
    changes: Dict[str, Any]
    note: str | None = None


@dataclass(frozen=True)
class ApprovalDecisionInput:
    step_id: int
    action: str
    comments: str | None = None
    publish_override: bool | None = None


@dataclass(frozen=True)
class TokenDecisionInput:
    token: str
    action: str
    comments: str | None = None


@dataclass(frozen=True)
class ModificationRulesInput:
    fields: List[Dict[str, Any]]
    approver_ids: List[int] = field(default_factory=list)
    notify_all_suppliers: bool = False
    subject: str | None = None
    body: str | None = None


@dataclass(frozen=True)
class ModificationDecisionInput:
    modification_id: int
    action: str
    note: str | None = None
    publish_override: bool | None = None


@dataclass(frozen=True)
class RfqPauseInput:
    rfq_id: int
    reason: str | None = None
    notify_suppliers: bool = True


@dataclass(frozen=True)
class PauseDecisionInput:
    request_id: int
    action: str
    note: str | None = None


@dataclass(frozen=True)
class AuthLoginInput:
    email: str
    password: str


@dataclass(frozen=True)
class AuthUser:
    email: str
    display_name: str
    tenant_id: str
    role: str
