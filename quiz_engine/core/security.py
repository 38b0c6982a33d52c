"""JWT token utilities.

Tokens are minted by the course platform's auth service; the engine only
needs to verify them and read ``sub`` (actor id) and ``role``.
``create_access_token`` exists for the test suite and for minting local
development tokens against the same secret.
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from quiz_engine.config import settings


def create_access_token(
    data: dict,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT. Returns payload dict or None on failure."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
