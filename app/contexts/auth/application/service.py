from __future__ import annotations

import secrets
from typing import Iterable

from app.domain.contracts import AuthLoginInput, AuthUser
from app.policies import normalize_role


class AuthService:
    """Checks credentials against the APP_USERS roster (email:password:tenant:display:role)."""

    def login(self, auth_input: AuthLoginInput, raw_users: object) -> AuthUser | None:
        email = (auth_input.email or "").strip().lower()
        password = auth_input.password or ""
        if not email or not password:
            return None

        for user in self._parse_users(raw_users):
            if user["email"] != email:
                continue
            if not secrets.compare_digest(user["password"].encode("utf-8"), password.encode("utf-8")):
                return None
            return AuthUser(
                email=user["email"],
                display_name=user["display_name"],
                tenant_id=user["tenant_id"],
                role=user["role"],
            )
        return None

    @staticmethod
    def _parse_users(raw_users: object) -> Iterable[dict]:
        if not raw_users:
            return []
        if isinstance(raw_users, str):
            entries = []
            for chunk in raw_users.replace("\n", ",").replace(";", ",").split(","):
                entry = chunk.strip()
                if entry:
                    entries.append(entry)
        elif isinstance(raw_users, (list, tuple, set)):
            entries = [str(item).strip() for item in raw_users if str(item).strip()]
        else:
            return []

        users = []
        for entry in entries:
            parts = [part.strip() for part in entry.split(":")]
            if len(parts) < 3:
                continue
            email, password, tenant_id = parts[0].lower(), parts[1], parts[2]
            display_name = parts[3] if len(parts) > 3 and parts[3] else email.split("@")[0]
            role = normalize_role(parts[4] if len(parts) > 4 else "buyer", default="buyer")
            users.append(
                {
                    "email": email,
                    "password": password,
                    "tenant_id": tenant_id,
                    "display_name": display_name,
                    "role": role,
                }
            )
        return users
