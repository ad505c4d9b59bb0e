from __future__ import annotations

import hmac
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
CRON_SECRET = os.getenv("CRON_SECRET", "")
# Token endpoint of the external identity provider, advertised in the OpenAPI schema.
AUTH_TOKEN_URL = os.getenv("AUTH_TOKEN_URL", "/auth/v1/token")


def create_access_token(
    *,
    user_id: str,
    email: str | None = None,
    expires_minutes: int | None = None,
) -> str:
    now = datetime.now(UTC)
    expire_delta = timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)
    payload: dict[str, Any] = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    if email is not None:
        payload["email"] = email
    if JWT_AUDIENCE is not None:
        payload["aud"] = JWT_AUDIENCE
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    decoded = jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[JWT_ALGORITHM],
        audience=JWT_AUDIENCE,
        options={"verify_aud": JWT_AUDIENCE is not None},
    )
    if not isinstance(decoded, dict) or not decoded.get("sub"):
        raise ValueError("Invalid token payload")
    return decoded


def verify_cron_credential(authorization: str | None) -> bool:
    if not CRON_SECRET or not authorization:
        return False
    return hmac.compare_digest(authorization.encode("utf-8"), f"Bearer {CRON_SECRET}".encode("utf-8"))
