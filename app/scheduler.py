from __future__ import annotations

import os
import threading
import time
import uuid

from flask import Flask

from app.contexts.approvals.application.approval_service import ApprovalService
from app.contexts.approvals.infrastructure.repositories import ApprovalRunRepository
from app.contexts.notifications.application.dispatcher import current_mail_transport
from app.contexts.notifications.infrastructure.outbox import process_notification_outbox
from app.db import close_db, get_db
from app.observability import bind_request_id


class ApprovalScheduler:
    """Background loop: SLA reminders per tenant, then one outbox batch."""

    def __init__(self, app: Flask, approval_service: ApprovalService | None = None) -> None:
        self.app = app
        self.approval_service = approval_service or ApprovalService()
        self.interval_seconds = _int_config(app, "APPROVAL_SCHEDULER_INTERVAL_SECONDS", 300, 10, 86_400)
        self.min_backoff_seconds = _int_config(app, "APPROVAL_SCHEDULER_MIN_BACKOFF_SECONDS", 30, 5, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "APPROVAL_SCHEDULER_MAX_BACKOFF_SECONDS",
            600,
            self.min_backoff_seconds,
            86_400,
        )
        self.outbox_batch_size = _int_config(app, "NOTIFICATION_OUTBOX_BATCH_SIZE", 50, 1, 5000)

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_counts: dict[str, int] = {}
        self._next_run_at: dict[str, float] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="approval-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                self.app.logger.exception("approval_scheduler_cycle_failed")
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> dict:
        summary = {"reminders": 0, "outbox": {}}
        with bind_request_id(f"scheduler-{uuid.uuid4().hex[:12]}"), self.app.app_context():
            db = get_db()
            try:
                for tenant_id in ApprovalRunRepository.tenants_with_pending_runs(db):
                    summary["reminders"] += self._run_tenant(db, tenant_id)
                summary["outbox"] = process_notification_outbox(
                    db,
                    current_mail_transport(),
                    limit=self.outbox_batch_size,
                )
                db.commit()
            finally:
                close_db()
        return summary

    def _run_tenant(self, db, tenant_id: str) -> int:
        if not self._is_due(tenant_id):
            return 0
        try:
            reminded = self.approval_service.send_due_reminders(db, tenant_id=tenant_id)
        except Exception:  # noqa: BLE001
            self.app.logger.exception("approval_reminders_failed", extra={"tenant_id": tenant_id})
            self._register_failure(tenant_id)
            return 0
        self._clear_backoff(tenant_id)
        return reminded

    def _is_due(self, key: str) -> bool:
        next_run_at = self._next_run_at.get(key)
        if next_run_at is None:
            return True
        return time.monotonic() >= next_run_at

    def _clear_backoff(self, key: str) -> None:
        self._failure_counts.pop(key, None)
        self._next_run_at.pop(key, None)

    def _register_failure(self, key: str) -> None:
        failure_count = self._failure_counts.get(key, 0) + 1
        self._failure_counts[key] = failure_count
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (failure_count - 1)),
        )
        self._next_run_at[key] = time.monotonic() + backoff_seconds


def start_approval_scheduler(app: Flask) -> ApprovalScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = ApprovalScheduler(app)
    scheduler.start()
    app.extensions["approval_scheduler"] = scheduler
    app.logger.info(
        "approval_scheduler_started",
        extra={"interval_seconds": scheduler.interval_seconds, "outbox_batch_size": scheduler.outbox_batch_size},
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("APPROVAL_SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
