from __future__ import annotations

import time
from typing import Any, Protocol

from jose import jwt
from jose.exceptions import JOSEError

TOKEN_COOKIE = "auth_token"
TOKEN_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = 14 * 24 * 3600


class TokenVerifier(Protocol):
    def verify(self, token: str) -> dict[str, Any] | None: ...


class AllowAllVerifier:
    def verify(self, token: str) -> dict[str, Any] | None:
        return {}


class Hs256TokenVerifier:
    """Validates compact HS256 JWTs issued by the panel login service."""

    def __init__(self, secret: str, leeway: float = 0.0):
        if not secret:
            raise ValueError("jwt secret must not be empty")
        self.secret = secret
        self.leeway = leeway

    def sign(self, claims: dict[str, Any], ttl: int = DEFAULT_TOKEN_TTL) -> str:
        now = int(time.time())
        payload = {"iat": now, "exp": now + ttl, **claims}
        return jwt.encode(payload, self.secret, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: str) -> dict[str, Any] | None:
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"verify_aud": False, "leeway": int(self.leeway)},
            )
        except JOSEError:
            return None
        return claims if isinstance(claims, dict) else None


def build_verifier(auth_cfg: dict[str, Any]) -> TokenVerifier:
    if not bool(auth_cfg.get("enabled", True)):
        return AllowAllVerifier()
    return Hs256TokenVerifier(str(auth_cfg.get("jwt_secret", "")))
