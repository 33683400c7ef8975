from flask import session, g, request


DEFAULT_TENANT_ID = "tenant-demo"
TENANT_HEADER = "X-Tenant-Id"


def current_tenant_id() -> str | None:
    return normalize_tenant_id(session.get("tenant_id")) or normalize_tenant_id(getattr(g, "tenant_id", None))


def normalize_tenant_id(value: str | None) -> str | None:
    tenant_id = str(value or "").strip()
    return tenant_id or None


def scoped_tenant_id(value: str | None = None) -> str:
    return normalize_tenant_id(value) or current_tenant_id() or DEFAULT_TENANT_ID


def load_request_tenant() -> None:
    session_tenant = normalize_tenant_id(session.get("tenant_id"))
    if session_tenant:
        g.tenant_id = session_tenant
        return
    g.tenant_id = normalize_tenant_id(request.headers.get(TENANT_HEADER)) or DEFAULT_TENANT_ID
