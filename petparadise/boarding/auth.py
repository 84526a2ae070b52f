"""Signed session tokens."""

from __future__ import annotations

import datetime as dt

from jose import JWTError, jwt

from .errors import AuthenticationError

ACCESS = "access"
REFRESH = "refresh"


def create_token(
    user: dict,
    *,
    secret: str,
    algorithm: str = "HS256",
    token_type: str = ACCESS,
    expires_in: dt.timedelta,
) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user["id"]),
        "user_id": user["id"],
        "email": user["email"],
        "role": user["role"],
        "token_version": user["token_version"],
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(token: str, *, secret: str, algorithm: str = "HS256", token_type: str = ACCESS) -> dict:
    """Verify signature, expiry and token type; return the claims."""

    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc
    if payload.get("type") != token_type or "user_id" not in payload:
        raise AuthenticationError("Invalid token structure")
    return payload
