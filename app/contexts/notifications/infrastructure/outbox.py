from __future__ import annotations

import random
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from flask import current_app

from app.contexts.notifications.domain.transport import MailDeliveryError, MailTransport
from app.infrastructure.repositories.base import parse_utc, utc_now_iso
from app.observability import (
    observe_notification_dead_letter,
    observe_notification_delivery,
    observe_notification_outbox_retry,
    observe_notification_retry_backoff,
)


OUTBOX_PENDING = "pending"
OUTBOX_RUNNING = "running"
OUTBOX_SENT = "sent"
OUTBOX_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _next_backoff_seconds(attempt: int) -> float:
    base = max(1, int(current_app.config.get("NOTIFICATION_OUTBOX_MIN_BACKOFF_SECONDS", 30) or 30))
    max_seconds = max(base, int(current_app.config.get("NOTIFICATION_OUTBOX_MAX_BACKOFF_SECONDS", 1800) or 1800))
    exponent = max(0, int(attempt) - 1)
    raw_backoff = float(min(max_seconds, base * (2**exponent)))
    configured_ratio = current_app.config.get("NOTIFICATION_OUTBOX_BACKOFF_JITTER_RATIO")
    jitter_ratio = 0.25 if configured_ratio is None else float(configured_ratio)
    jitter_ratio = max(0.0, min(1.0, jitter_ratio))
    jitter_window = raw_backoff * jitter_ratio
    jitter = random.uniform(-jitter_window, jitter_window) if jitter_window > 0 else 0.0
    return max(1.0, min(float(max_seconds), raw_backoff + jitter))


def _max_attempts() -> int:
    return max(1, int(current_app.config.get("NOTIFICATION_OUTBOX_MAX_ATTEMPTS", 5) or 5))


def enqueue_notification(
    db,
    *,
    tenant_id: str,
    kind: str,
    recipient: str,
    subject: str,
    html_body: str,
    last_error: str | None,
    attempts: int = 1,
) -> int:
    """Park a failed delivery for the outbox worker; the first retry waits one backoff."""
    backoff = _next_backoff_seconds(attempts)
    now = utc_now_iso()
    cursor = db.execute(
        """
        INSERT INTO notification_outbox (
            kind, recipient, subject, html_body, status, attempts, next_attempt_at,
            last_error, tenant_id, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            kind,
            recipient,
            subject,
            html_body,
            OUTBOX_PENDING,
            int(attempts),
            _iso_utc(_utcnow() + timedelta(seconds=backoff)),
            last_error,
            tenant_id,
            now,
            now,
        ),
    )
    row = cursor.fetchone()
    observe_notification_outbox_retry(1)
    observe_notification_retry_backoff(backoff)
    return int(row["id"] if isinstance(row, dict) else row[0])


def _select_due(db, tenant_id: str | None, limit: int) -> List[Dict[str, object]]:
    tenant_clause = ""
    params: List[object] = [OUTBOX_PENDING]
    if tenant_id:
        tenant_clause = "AND tenant_id = ?"
        params.append(tenant_id)
    rows = db.execute(
        f"""
        SELECT id, tenant_id, kind, recipient, subject, html_body, attempts, next_attempt_at
        FROM notification_outbox
        WHERE status = ?
          {tenant_clause}
        ORDER BY next_attempt_at ASC, id ASC
        LIMIT ?
        """,
        (*params, max(1, int(limit) * 4)),
    ).fetchall()

    now = _utcnow()
    due: List[Dict[str, object]] = []
    for raw_row in rows:
        row = dict(raw_row)
        next_attempt_at = parse_utc(str(row.get("next_attempt_at") or ""))
        if next_attempt_at and next_attempt_at > now:
            continue
        due.append(row)
        if len(due) >= limit:
            break
    return due


def _claim(db, outbox_id: int) -> bool:
    cursor = db.execute(
        """
        UPDATE notification_outbox
        SET status = ?, attempts = attempts + 1, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (OUTBOX_RUNNING, utc_now_iso(), outbox_id, OUTBOX_PENDING),
    )
    return int(getattr(cursor, "rowcount", 0) or 0) > 0


def _finish(db, outbox_id: int, *, status: str, last_error: str | None, next_attempt_at: str | None = None) -> None:
    db.execute(
        """
        UPDATE notification_outbox
        SET status = ?, last_error = ?, next_attempt_at = COALESCE(?, next_attempt_at), updated_at = ?
        WHERE id = ?
        """,
        (status, last_error, next_attempt_at, utc_now_iso(), outbox_id),
    )


def process_notification_outbox(
    db,
    transport: MailTransport,
    *,
    tenant_id: str | None = None,
    limit: int = 50,
) -> Dict[str, int]:
    candidates = _select_due(db, tenant_id, max(1, int(limit)))
    summary = {"processed": 0, "sent": 0, "requeued": 0, "dead_lettered": 0}
    max_attempts = _max_attempts()

    for candidate in candidates:
        outbox_id = int(candidate["id"])
        if not _claim(db, outbox_id):
            continue
        db.commit()
        attempt = int(candidate.get("attempts") or 0) + 1
        kind = str(candidate.get("kind") or "unknown")
        started = time.perf_counter()
        summary["processed"] += 1
        try:
            transport.send_one(str(candidate["recipient"]), str(candidate["subject"]), str(candidate["html_body"]))
        except MailDeliveryError as exc:
            if exc.definitive or attempt >= max_attempts:
                _finish(db, outbox_id, status=OUTBOX_FAILED, last_error=str(exc))
                db.commit()
                summary["dead_lettered"] += 1
                observe_notification_dead_letter(1)
                observe_notification_delivery(kind, "dead_letter")
                current_app.logger.error(
                    "notification_dead_lettered",
                    extra={
                        "outbox_id": outbox_id,
                        "tenant_id": candidate.get("tenant_id"),
                        "recipient": candidate.get("recipient"),
                        "attempt": attempt,
                        "error": str(exc),
                    },
                )
                continue

            backoff = _next_backoff_seconds(attempt)
            _finish(
                db,
                outbox_id,
                status=OUTBOX_PENDING,
                last_error=str(exc),
                next_attempt_at=_iso_utc(_utcnow() + timedelta(seconds=backoff)),
            )
            db.commit()
            summary["requeued"] += 1
            observe_notification_outbox_retry(1)
            observe_notification_retry_backoff(backoff)
            observe_notification_delivery(kind, "retry")
            current_app.logger.warning(
                "notification_retry_scheduled",
                extra={
                    "outbox_id": outbox_id,
                    "tenant_id": candidate.get("tenant_id"),
                    "attempt": attempt,
                    "next_backoff_seconds": round(backoff, 3),
                    "error": str(exc),
                },
            )
            continue

        _finish(db, outbox_id, status=OUTBOX_SENT, last_error=None)
        db.commit()
        summary["sent"] += 1
        observe_notification_delivery(kind, "sent")
        current_app.logger.info(
            "notification_outbox_delivered",
            extra={
                "outbox_id": outbox_id,
                "tenant_id": candidate.get("tenant_id"),
                "attempt": attempt,
                "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
            },
        )
    return summary
