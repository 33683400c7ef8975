from __future__ import annotations

from flask import Blueprint, current_app

from app.db import get_read_db
from app.observability import metrics_snapshot, outbox_health, prometheus_metrics_text


system_bp = Blueprint("system", __name__)

_EMPTY_QUEUE = {"pending_jobs": 0, "running_jobs": 0, "failed_jobs": 0, "sent_jobs": 0}


def _outbox_state(log_key: str) -> dict | None:
    try:
        return outbox_health(get_read_db())
    except Exception:  # noqa: BLE001
        current_app.logger.exception(log_key)
        return None


@system_bp.route("/health", methods=["GET"])
def health():
    db_path = str(current_app.config.get("DB_PATH") or "")
    outbox = _outbox_state("health_outbox_check_failed")
    return {
        "status": "ok" if outbox is not None else "degraded",
        "db": "postgres" if db_path.startswith("postgres") else "sqlite",
        "env": current_app.config.get("ENV", "unknown"),
        "metrics": {"http": metrics_snapshot()},
        "notifications": outbox if outbox is not None else {"queue": dict(_EMPTY_QUEUE)},
    }


@system_bp.route("/metrics", methods=["GET"])
def metrics():
    return current_app.response_class(
        prometheus_metrics_text(outbox_state=_outbox_state("metrics_outbox_check_failed")),
        mimetype="text/plain; version=0.0.4",
    )
