"""JWT helpers shared by the auth dependency, tests and local tooling."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt

from .config import Settings

TOKEN_ISSUER = "decision-rooms-auth"
TOKEN_AUDIENCE = "decision-rooms"


def issue_access_token(*, settings: Settings, subject: str, extra: dict[str, Any]) -> tuple[str, int]:
    """Create a participant access token.

    Production tokens come from the identity provider; this mirrors its claims.

    Args:
        settings: Service settings.
        subject: Participant id (``sub`` claim).
        extra: Profile data stored in the ``ctx`` claim.

    Returns:
        tuple[str, int]: The JWT and its lifetime in seconds.
    """

    now = datetime.now(tz=UTC)
    expires_in = timedelta(seconds=settings.jwt_ttl_seconds)
    claims = {
        "iss": TOKEN_ISSUER,
        "aud": TOKEN_AUDIENCE,
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
        "jti": uuid4().hex,
        "ctx": extra,
    }
    token = jwt.encode(payload=claims, key=settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, settings.jwt_ttl_seconds


def decode_access_token(token: str, *, settings: Settings) -> dict[str, Any]:
    return jwt.decode(
        token,
        key=settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=TOKEN_AUDIENCE,
        issuer=TOKEN_ISSUER,
    )
