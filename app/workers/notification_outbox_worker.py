from __future__ import annotations

import argparse
import time
import uuid

from app import create_app
from app.config import Config
from app.contexts.notifications.application.dispatcher import current_mail_transport
from app.contexts.notifications.infrastructure.outbox import process_notification_outbox
from app.db import close_db, get_db
from app.observability import bind_request_id


class WorkerConfig(Config):
    APPROVAL_SCHEDULER_ENABLED = False
    DB_AUTO_INIT = False


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Retries queued notification emails (outbox).")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit.")
    parser.add_argument("--tenant-id", default="", help="Only process one workspace.")
    parser.add_argument("--limit", type=int, default=0, help="Maximum messages per batch.")
    parser.add_argument("--interval", type=int, default=0, help="Seconds between batches.")
    return parser


def _run_once(app, tenant_id: str | None, limit: int) -> dict:
    with app.app_context():
        db = get_db()
        try:
            result = process_notification_outbox(
                db,
                current_mail_transport(),
                tenant_id=tenant_id,
                limit=limit,
            )
            db.commit()
            return result
        finally:
            close_db()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    app = create_app(WorkerConfig)

    configured_limit = int(app.config.get("NOTIFICATION_OUTBOX_BATCH_SIZE", 50) or 50)
    configured_interval = int(app.config.get("NOTIFICATION_OUTBOX_WORKER_INTERVAL_SECONDS", 10) or 10)
    limit = max(1, int(args.limit or configured_limit))
    interval_seconds = max(1, int(args.interval or configured_interval))
    tenant_id = str(args.tenant_id or "").strip() or None

    while True:
        with bind_request_id(f"worker-{uuid.uuid4().hex[:12]}"):
            summary = _run_once(app, tenant_id=tenant_id, limit=limit)
            app.logger.info(
                "notification_outbox_batch_completed",
                extra={
                    "tenant_id": tenant_id or "all",
                    "processed": summary.get("processed", 0),
                    "sent": summary.get("sent", 0),
                    "requeued": summary.get("requeued", 0),
                    "dead_lettered": summary.get("dead_lettered", 0),
                },
            )
        if args.once:
            break
        time.sleep(interval_seconds)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
