from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from labledger.core.config import settings
from labledger.core.exceptions import AuthenticationError


def create_access_token(user_id: int, role: str) -> str:
    """Create JWT access token (used by the identity service and by tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any]:
    """
    Decode and validate an access token.

    Raises:
        AuthenticationError: If token is invalid, expired or not an access token
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {str(e)}")

    if payload.get("type") != "access":
        raise AuthenticationError("Invalid token type, expected access")
    if not str(payload.get("sub", "")).isdigit():
        raise AuthenticationError("Invalid token subject")

    return payload
