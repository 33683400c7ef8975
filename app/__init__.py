import os

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from app.config import Config
from app.db import close_db, init_db
from app.db_migrations import register_db_cli
from app.errors import AppError, SystemError
from app.observability import configure_json_logging, ensure_request_id, mark_request_start, observe_response
from app.security import apply_security_headers, enforce_rate_limit
from app.tenant import load_request_tenant


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class())
    configure_json_logging(app)

    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)

    _register_request_hooks(app)
    _register_error_handlers(app)
    _register_auth(app)
    app.before_request(load_request_tenant)
    _register_mail(app)
    _register_blueprints(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    _register_scheduler(app)
    app.teardown_appcontext(close_db)
    return app


def _maybe_init_schema(app: Flask) -> None:
    if not (app.testing or app.config.get("DB_AUTO_INIT", False)):
        return

    flask_env = (os.environ.get("FLASK_ENV") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("db_auto_init_skipped", extra={"flask_env": flask_env})
        return

    with app.app_context():
        init_db()


def _register_blueprints(app: Flask) -> None:
    from app.routes.approval_routes import approval_bp
    from app.routes.system_routes import system_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(approval_bp)


def _register_auth(app: Flask) -> None:
    from app.contexts.auth.interfaces.http import register_auth

    register_auth(app)


def _register_mail(app: Flask) -> None:
    from app.contexts.notifications.infrastructure.mail_transport import build_mail_transport

    app.extensions.setdefault("mail_transport", build_mail_transport(app.config))


def _register_scheduler(app: Flask) -> None:
    from app.scheduler import start_approval_scheduler

    start_approval_scheduler(app)


def _register_request_hooks(app: Flask) -> None:
    @app.before_request
    def _start_request() -> None:
        ensure_request_id()
        mark_request_start()

    # Ahead of auth and tenant resolution.
    app.before_request(enforce_rate_limit)

    @app.after_request
    def _finish_request(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return apply_security_headers(observe_response(response))


def _register_error_handlers(app: Flask) -> None:
    def _request_context() -> dict:
        return {"request_path": request.path, "http_method": request.method}

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        log_method = app.logger.error if exc.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": exc.code,
                "http_status": exc.http_status,
                "message_key": exc.message_key,
                "details": exc.details,
                **_request_context(),
            },
            exc_info=exc.critical,
        )
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(HTTPException)
    def _handle_http_error(exc: HTTPException):
        code = (exc.name or "error").lower().replace(" ", "_")
        body = {"error": code, "message": exc.description, "request_id": ensure_request_id()}
        return jsonify(body), exc.code or 500

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        request_id = ensure_request_id()
        mapped = SystemError(code="unexpected_error", http_status=500, critical=True, details=str(exc))
        app.logger.exception(
            "unexpected_exception",
            extra={"request_id": request_id, "error_code": mapped.code, **_request_context()},
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status
