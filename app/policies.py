from __future__ import annotations

from typing import Iterable, Set

from flask import current_app, request, session

from app.domain.contracts import Actor
from app.errors import AuthenticationError
from app.errors import PermissionError as AppPermissionError


VALID_ROLES: Set[str] = {"buyer", "admin", "approver", "supplier"}

ACTOR_EMAIL_HEADER = "X-Actor-Email"
ACTOR_ROLE_HEADER = "X-Actor-Role"


def normalize_role(role: str | None, default: str = "buyer") -> str:
    normalized = str(role or "").strip().lower()
    if normalized in VALID_ROLES:
        return normalized
    return default if default in VALID_ROLES else ""


def current_actor() -> Actor:
    """Signed-in user, or the X-Actor-* headers when AUTH_ENABLED is off."""
    email = str(session.get("user_email") or "").strip().lower()
    if email:
        return Actor(
            email=email,
            role=normalize_role(session.get("user_role"), default="buyer"),
            display_name=session.get("display_name"),
        )
    if not bool(current_app.config.get("AUTH_ENABLED", True)):
        header_email = str(request.headers.get(ACTOR_EMAIL_HEADER) or "").strip().lower()
        if header_email:
            return Actor(
                email=header_email,
                role=normalize_role(request.headers.get(ACTOR_ROLE_HEADER), default="buyer"),
            )
    raise AuthenticationError(code="auth_required")


def current_role() -> str:
    return current_actor().role


def normalize_allowed_roles(roles: Iterable[str]) -> Set[str]:
    allowed: Set[str] = set()
    for role in roles:
        normalized = normalize_role(role, default="")
        if normalized:
            allowed.add(normalized)
    return allowed


def has_any_role(role: str | None, allowed_roles: Iterable[str]) -> bool:
    normalized_role = normalize_role(role, default="buyer")
    allowed = normalize_allowed_roles(allowed_roles)
    return not allowed or normalized_role in allowed


def require_roles(*allowed_roles: str, actor: Actor | None = None) -> Actor:
    resolved = actor or current_actor()
    if has_any_role(resolved.role, allowed_roles):
        return resolved
    raise AppPermissionError(
        code="permission_denied",
        message_key="permission_denied",
        http_status=403,
        critical=False,
        payload={"required_roles": sorted(normalize_allowed_roles(allowed_roles))},
    )
