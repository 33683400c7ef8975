from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict

from flask import current_app, request, session

from app.errors import ValidationError
from app.policies import ACTOR_EMAIL_HEADER


# Public endpoints get their own, tighter budget.
_SENSITIVE_PATHS: Dict[str, str] = {
    "/api/auth/login": "RATE_LIMIT_LOGIN_MAX_REQUESTS",
    "/api/approval/verify": "RATE_LIMIT_TOKEN_MAX_REQUESTS",
    "/api/supplier/quote-access": "RATE_LIMIT_TOKEN_MAX_REQUESTS",
}

_MAX_TRACKED_KEYS = 10_000

_API_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store",
}


@dataclass
class _Window:
    started_at: float
    hits: int = 0


class FixedWindowRateLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}

    def hit(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
        """Count one request; returns (allowed, seconds until the window resets)."""
        now = time.monotonic()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.started_at >= window_seconds:
                window = self._windows[key] = _Window(started_at=now)
            window.hits += 1
            if len(self._windows) > _MAX_TRACKED_KEYS:
                self._evict(now - window_seconds)
            retry_after = max(0, int(window_seconds - (now - window.started_at)))
            return window.hits <= limit, retry_after

    def _evict(self, cutoff: float) -> None:
        self._windows = {key: window for key, window in self._windows.items() if window.started_at >= cutoff}

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_RATE_LIMITER = FixedWindowRateLimiter()


def _client_identity() -> str:
    actor = str(session.get("user_email") or "").strip().lower()
    if not actor and not current_app.config.get("AUTH_ENABLED", True):
        actor = str(request.headers.get(ACTOR_EMAIL_HEADER) or "").strip().lower()
    return f"{request.remote_addr or 'unknown'}|{actor or 'anon'}"


def _request_budget() -> int:
    config_key = _SENSITIVE_PATHS.get(request.path)
    if config_key:
        return max(1, int(current_app.config.get(config_key, 20) or 20))
    return max(1, int(current_app.config.get("RATE_LIMIT_MAX_REQUESTS", 600) or 600))


def enforce_rate_limit() -> None:
    if not current_app.config.get("RATE_LIMIT_ENABLED", True) or request.method == "OPTIONS":
        return

    route = request.url_rule.rule if request.url_rule else request.path
    allowed, retry_after = _RATE_LIMITER.hit(
        f"{_client_identity()}|{request.method}|{route}",
        limit=_request_budget(),
        window_seconds=max(1, int(current_app.config.get("RATE_LIMIT_WINDOW_SECONDS", 60) or 60)),
    )
    if allowed:
        return

    current_app.logger.warning(
        "rate_limited",
        extra={"request_path": request.path, "remote_addr": request.remote_addr, "retry_after": retry_after},
    )
    raise ValidationError(
        code="rate_limited",
        http_status=429,
        payload={"retry_after": retry_after},
    )


def apply_security_headers(response):
    if not current_app.config.get("SECURITY_HEADERS_ENABLED", True):
        return response
    for header, value in _API_HEADERS.items():
        response.headers.setdefault(header, value)
    if request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


def reset_rate_limiter_for_tests() -> None:
    _RATE_LIMITER.reset()
