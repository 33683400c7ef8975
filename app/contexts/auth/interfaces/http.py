from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, session

from app.contexts.auth.application.service import AuthService
from app.domain.contracts import AuthLoginInput
from app.errors import AuthenticationError
from app.policies import current_actor, normalize_role


auth_bp = Blueprint("auth", __name__)
_auth_service = AuthService()

PUBLIC_PATHS = {
    "/api/auth/login",
    "/api/auth/logout",
    "/api/approval/verify",
    "/api/supplier/quote-access",
    "/health",
    "/metrics",
}


def register_auth(app) -> None:
    app.register_blueprint(auth_bp)

    @app.before_request
    def _require_login():
        if not app.config.get("AUTH_ENABLED", True):
            return None
        path = request.path or "/"
        if path in PUBLIC_PATHS or path.startswith("/static/"):
            return None
        if session.get("user_email"):
            return None
        raise AuthenticationError(code="auth_required")


@auth_bp.route("/api/auth/login", methods=["POST"])
def login():
    payload = request.get_json(silent=True) or {}
    user = _auth_service.login(
        AuthLoginInput(email=str(payload.get("email") or ""), password=str(payload.get("password") or "")),
        current_app.config.get("APP_USERS"),
    )
    if not user:
        current_app.logger.warning(
            "auth_login_failed",
            extra={"email": str(payload.get("email") or "").strip().lower(), "remote_addr": request.remote_addr},
        )
        raise AuthenticationError(code="invalid_credentials")

    session.clear()
    session["user_email"] = user.email
    session["display_name"] = user.display_name
    session["tenant_id"] = user.tenant_id
    session["user_role"] = normalize_role(user.role, default="buyer")
    current_app.logger.info("auth_login", extra={"email": user.email, "tenant_id": user.tenant_id})
    return jsonify(
        {
            "email": user.email,
            "displayName": user.display_name,
            "tenantId": user.tenant_id,
            "role": session["user_role"],
        }
    )


@auth_bp.route("/api/auth/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"ok": True})


@auth_bp.route("/api/auth/me", methods=["GET"])
def me():
    actor = current_actor()
    return jsonify({"email": actor.email, "role": actor.role, "displayName": actor.display_name})
