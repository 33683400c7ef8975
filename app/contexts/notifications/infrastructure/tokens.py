"""
Signed links for suppliers and approvers.

Quote token:    7 days (QUOTE_TOKEN_TTL_SECONDS)
Approval token: 3 days (APPROVAL_TOKEN_TTL_SECONDS)
Algorithm:      HS256

Payload:
{
    "purpose": "quote" | "approval",
    "tenant_id": <workspace>,
    "rfqId": <rfq id>,
    "supplierId": <supplier id>          (quote)
    "stepId": <step id>,                 (approval)
    "approverEmail": <email>,            (approval)
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping

import jwt


ALGORITHM = "HS256"
PURPOSE_QUOTE = "quote"
PURPOSE_APPROVAL = "approval"

DEFAULT_TTLS = {
    PURPOSE_QUOTE: 7 * 24 * 3600,
    PURPOSE_APPROVAL: 3 * 24 * 3600,
}


class InvalidTokenError(ValueError):
    pass


class TokenService:
    def __init__(self, secret: str, *, ttl_seconds: Mapping[str, int] | None = None) -> None:
        if not secret:
            raise ValueError("a signing secret is required")
        self._secret = secret
        self._ttls = dict(DEFAULT_TTLS)
        self._ttls.update({key: int(value) for key, value in (ttl_seconds or {}).items() if value})

    @classmethod
    def from_config(cls, config: Mapping) -> "TokenService":
        secret = config.get("JWT_SECRET_KEY") or config["SECRET_KEY"]
        return cls(
            secret,
            ttl_seconds={
                PURPOSE_QUOTE: config.get("QUOTE_TOKEN_TTL_SECONDS"),
                PURPOSE_APPROVAL: config.get("APPROVAL_TOKEN_TTL_SECONDS"),
            },
        )

    def issue(self, claims: Mapping[str, Any], *, purpose: str = PURPOSE_QUOTE) -> str:
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = dict(claims)
        payload.update(
            {
                "purpose": purpose,
                "iat": now,
                "exp": now + timedelta(seconds=self._ttls.get(purpose, DEFAULT_TTLS[PURPOSE_QUOTE])),
                "jti": str(uuid.uuid4()),
            }
        )
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str, *, purpose: str = PURPOSE_QUOTE) -> Dict[str, Any]:
        try:
            payload = jwt.decode(str(token or ""), self._secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError(str(exc)) from exc
        if payload.get("purpose") != purpose:
            raise InvalidTokenError(f"expected {purpose} token, got {payload.get('purpose')}")
        return payload
