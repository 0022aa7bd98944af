"""
Bearer tokens from the identity provider.

The booking engine trusts the ``sub`` (user email) and optional ``role`` claims
and never re-authenticates a caller.
"""

from datetime import datetime, timedelta, timezone

import jwt

from backend.core import config

REQUIRED_CLAIMS = ["sub", "exp"]


def create_access_token(subject: str, role: str | None = None, expires_minutes: int | None = None) -> str:
    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=expires_minutes or config.JWT_EXPIRES_MINUTES),
    }
    if role:
        payload["role"] = role
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(
        token,
        config.JWT_SECRET_KEY,
        algorithms=[config.JWT_ALGORITHM],
        options={"require": REQUIRED_CLAIMS},
    )


def token_identity(payload: dict) -> tuple[str, str | None]:
    """Return the (email, role) pair a decoded token vouches for."""
    email = str(payload.get("sub") or "").strip().lower()
    if not email:
        raise jwt.InvalidTokenError("Token has no subject")
    return email, payload.get("role")
