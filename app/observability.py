from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, Tuple

from flask import current_app, g, has_request_context, request

from app.infrastructure.repositories.base import parse_utc


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_OUTBOX_BACKOFF_BUCKETS_SECONDS = (1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)

# name -> (help, label names); unlabelled counters are always rendered.
_COUNTERS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "http_request_total": ("Total HTTP requests by method, route and status.", ("method", "route", "status")),
    "approval_decision_total": ("Approval step decisions by action and outcome.", ("action", "outcome")),
    "approval_run_completed_total": ("Approval runs reaching a terminal status.", ("status",)),
    "notification_delivery_total": ("Notification deliveries by kind and result.", ("kind", "result")),
    "notification_outbox_retry_count": ("Total notification outbox retries scheduled.", ()),
    "notification_dead_letter_total": ("Notifications moved to dead letter.", ()),
    "domain_event_emitted_total": ("Domain events emitted by type.", ("event_type",)),
}

_HISTOGRAMS: Dict[str, Tuple[str, Tuple[str, ...], Tuple[float, ...]]] = {
    "http_request_duration_ms": (
        "HTTP request duration in milliseconds.",
        ("method", "route"),
        _HTTP_DURATION_BUCKETS_MS,
    ),
    "notification_retry_backoff_seconds": (
        "Backoff scheduled between notification retries.",
        (),
        _OUTBOX_BACKOFF_BUCKETS_SECONDS,
    ),
}

_OUTBOX_STATES = ("pending", "running", "failed", "sent")

_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")

_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def set_log_request_id(request_id: str | None) -> None:
    _REQUEST_ID_CTX.set(str(request_id or "").strip())


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    """Tag every log line emitted inside the block, for workers running outside a request."""
    token = _REQUEST_ID_CTX.set(str(request_id or "").strip())
    try:
        yield _REQUEST_ID_CTX.get()
    finally:
        _REQUEST_ID_CTX.reset(token)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; `extra={...}` fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": current_request_id(default=str(getattr(record, "request_id", "") or "n/a")),
        }
        if has_request_context():
            payload["method"] = request.method
            payload["path"] = request.path
            tenant_id = getattr(g, "tenant_id", None)
            if tenant_id:
                payload["tenant_id"] = tenant_id

        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_") or key in payload or callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).strip().upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if not request_id:
        request_id = str(request.headers.get("X-Request-Id") or "").strip() or str(uuid.uuid4())
        g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _REQUEST_ID_CTX.get() or default or "n/a"


class _Histogram:
    def __init__(self, buckets: Tuple[float, ...]) -> None:
        self.buckets = buckets
        self.counts = [0] * len(buckets)
        self.count = 0
        self.total = 0.0

    def observe(self, value: float) -> None:
        value = max(0.0, float(value))
        self.count += 1
        self.total += value
        for index, limit in enumerate(self.buckets):
            if value <= limit:
                self.counts[index] += 1

    def cumulative(self) -> list[tuple[str, int]]:
        return [(f"{limit:g}", self.counts[index]) for index, limit in enumerate(self.buckets)] + [("+Inf", self.count)]


class MetricsRegistry:
    """In-process counters and histograms keyed by metric name and label values."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[tuple, int]] = {}
        self._histograms: Dict[str, Dict[tuple, _Histogram]] = {}
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._counters = {name: {} for name in _COUNTERS}
            self._histograms = {name: {} for name in _HISTOGRAMS}

    def inc(self, name: str, labels: tuple = (), amount: int = 1) -> None:
        if amount <= 0:
            return
        with self._lock:
            series = self._counters[name]
            series[labels] = series.get(labels, 0) + int(amount)

    def observe(self, name: str, value: float, labels: tuple = ()) -> None:
        buckets = _HISTOGRAMS[name][2]
        with self._lock:
            series = self._histograms[name]
            histogram = series.get(labels)
            if histogram is None:
                histogram = series[labels] = _Histogram(buckets)
            histogram.observe(value)

    def counter(self, name: str) -> Dict[tuple, int]:
        with self._lock:
            return dict(self._counters[name])

    def histograms(self, name: str) -> list[tuple[tuple, int, float, list[tuple[str, int]]]]:
        with self._lock:
            return [
                (labels, histogram.count, histogram.total, histogram.cumulative())
                for labels, histogram in sorted(self._histograms[name].items())
            ]

    def snapshot(self) -> dict:
        requests = self.counter("http_request_total")
        events = self.counter("domain_event_emitted_total")
        return {
            "requests_total": sum(requests.values()),
            "errors_total": sum(value for (_method, _route, status), value in requests.items() if int(status) >= 400),
            "approval_decisions_total": sum(self.counter("approval_decision_total").values()),
            "notification_deliveries_total": sum(self.counter("notification_delivery_total").values()),
            "notification_outbox": {
                "retry_count": sum(self.counter("notification_outbox_retry_count").values()),
                "dead_letter_total": sum(self.counter("notification_dead_letter_total").values()),
            },
            "domain_events": {
                "emitted_total": sum(events.values()),
                "by_type": {event_type: value for (event_type,), value in sorted(events.items())},
            },
        }


_METRICS = MetricsRegistry()


def _label(value: object, default: str = "unknown") -> str:
    return str(value or "").strip() or default


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = getattr(g, "_request_started_at", None)
    elapsed_ms = (time.perf_counter() - started) * 1000.0 if started else 0.0
    method = _label(request.method, "GET").upper()
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.inc("http_request_total", (method, _label(route), str(int(response.status_code))))
    _METRICS.observe("http_request_duration_ms", elapsed_ms, (method, _label(route)))
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_approval_decision(action: str, outcome: str) -> None:
    _METRICS.inc("approval_decision_total", (_label(action), _label(outcome)))


def observe_approval_run_completed(status: str) -> None:
    _METRICS.inc("approval_run_completed_total", (_label(status),))


def observe_notification_delivery(kind: str, result: str) -> None:
    _METRICS.inc("notification_delivery_total", (_label(kind), _label(result)))


def observe_notification_outbox_retry(count: int = 1) -> None:
    _METRICS.inc("notification_outbox_retry_count", (), int(count or 0))


def observe_notification_dead_letter(count: int = 1) -> None:
    _METRICS.inc("notification_dead_letter_total", (), int(count or 0))


def observe_notification_retry_backoff(backoff_seconds: float) -> None:
    _METRICS.observe("notification_retry_backoff_seconds", backoff_seconds)


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.inc("domain_event_emitted_total", (_label(event_type),))


def _prom_line(name: str, value: int | float, labels: Iterable[tuple[str, object]] = ()) -> str:
    pairs = sorted(labels)
    if not pairs:
        return f"{name} {value}"
    escaped = ",".join(
        '{}="{}"'.format(key, str(val).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"'))
        for key, val in pairs
    )
    return f"{name}{{{escaped}}} {value}"


def prometheus_metrics_text(*, outbox_state: dict | None = None) -> str:
    lines: list[str] = []

    for name, (help_text, label_names) in _COUNTERS.items():
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} counter")
        series = _METRICS.counter(name)
        if not label_names and not series:
            series = {(): 0}
        for labels, value in sorted(series.items()):
            lines.append(_prom_line(name, value, zip(label_names, labels)))

    for name, (help_text, label_names, _buckets) in _HISTOGRAMS.items():
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} histogram")
        for labels, count, total, buckets in _METRICS.histograms(name):
            base = list(zip(label_names, labels))
            for le_label, bucket_value in buckets:
                lines.append(_prom_line(f"{name}_bucket", bucket_value, base + [("le", le_label)]))
            lines.append(_prom_line(f"{name}_sum", total, base))
            lines.append(_prom_line(f"{name}_count", count, base))

    queue = (outbox_state or {}).get("queue") or {}
    lines.append("# HELP notification_outbox_queue_size Notification outbox size by state.")
    lines.append("# TYPE notification_outbox_queue_size gauge")
    for state in _OUTBOX_STATES:
        lines.append(_prom_line("notification_outbox_queue_size", int(queue.get(f"{state}_jobs") or 0), [("state", state)]))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def outbox_health(db) -> dict:
    """Queue depth per status plus a backlog verdict for /health and /metrics."""
    rows = db.execute(
        """
        SELECT status, COUNT(*) AS total, MIN(created_at) AS oldest_created_at
        FROM notification_outbox
        GROUP BY status
        """
    ).fetchall()
    counts = dict.fromkeys(_OUTBOX_STATES, 0)
    oldest_pending_at = None
    for row in rows:
        status = str(row["status"] or "").strip().lower()
        if status in counts:
            counts[status] = int(row["total"] or 0)
        if status == "pending":
            oldest_pending_at = parse_utc(row["oldest_created_at"])

    oldest_age = 0
    if oldest_pending_at is not None:
        oldest_age = max(0, int((datetime.now(timezone.utc) - oldest_pending_at).total_seconds()))
    critical_age = max(1, int(current_app.config.get("NOTIFICATION_OUTBOX_CRITICAL_AGE_SECONDS", 900) or 900))
    critical_depth = max(1, int(current_app.config.get("NOTIFICATION_OUTBOX_CRITICAL_PENDING_JOBS", 50) or 50))
    backlog_critical = counts["pending"] >= critical_depth or oldest_age >= critical_age

    if counts["running"]:
        worker_status = "running"
    elif counts["pending"]:
        worker_status = "stalled" if backlog_critical else "draining"
    else:
        worker_status = "idle"

    queue = {f"{state}_jobs": counts[state] for state in _OUTBOX_STATES}
    queue["oldest_pending_age_seconds"] = oldest_age
    return {"worker_status": worker_status, "backlog_critical": backlog_critical, "queue": queue}
