from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

NEVER = float("inf")


@dataclass(frozen=True)
class AuthSession:
    """Credential issued by a backend plus its expiry estimate.

    ``credential`` is opaque to callers: a bearer token, a cookie mapping or
    an API-key value depending on the adapter.
    """

    credential: Any
    issued_at: float = field(default_factory=time.time)
    expires_at: float = NEVER

    @classmethod
    def issue(cls, credential: Any, ttl: float | None) -> "AuthSession":
        now = time.time()
        return cls(credential=credential, issued_at=now, expires_at=now + ttl if ttl else NEVER)

    def is_valid(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) < self.expires_at

    def to_meta(self) -> dict[str, Any]:
        return {
            "credential": self.credential,
            "issued_at": self.issued_at,
            "expires_at": None if self.expires_at == NEVER else self.expires_at,
        }

    @classmethod
    def from_meta(cls, meta: dict[str, Any] | None) -> "AuthSession | None":
        if not isinstance(meta, dict) or not meta.get("credential"):
            return None
        try:
            issued_at = float(meta.get("issued_at") or 0)
            expires_raw = meta.get("expires_at")
            expires_at = NEVER if expires_raw is None else float(expires_raw)
        except (TypeError, ValueError):
            return None
        return cls(credential=meta["credential"], issued_at=issued_at, expires_at=expires_at)


class SessionState:
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
