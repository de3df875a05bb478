"""Security utilities for JWT token handling.

Tokens are issued by an upstream identity service; linkpulse only needs to
validate them and read the subject. ``create_access_token`` exists for that
service and for tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from jose import JWTError, jwt
from pydantic import BaseModel

from linkpulse.core.config import Settings

# JWT Configuration
ALGORITHM = "HS256"


class TokenData(BaseModel):
    """Data encoded in JWT token."""

    user_id: UUID
    email: str
    exp: datetime


def create_access_token(
    settings: Settings,
    user_id: UUID,
    email: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token.

    Args:
        settings: Provides the signing key and default lifetime
        user_id: The user's UUID
        email: The user's email
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    expire = datetime.now(timezone.utc) + expires_delta

    to_encode: dict[str, Any] = {
        "sub": str(user_id),
        "email": email,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(settings: Settings, token: str) -> TokenData | None:
    """Decode and validate a JWT access token.

    Returns:
        TokenData if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        email = payload.get("email")
        exp = payload.get("exp")

        if user_id is None or email is None:
            return None

        return TokenData(
            user_id=UUID(user_id),
            email=email,
            exp=datetime.fromtimestamp(exp, tz=timezone.utc),
        )
    except (JWTError, ValueError):
        return None
