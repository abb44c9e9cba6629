"""JWT verification for caller identity.

Tokens are minted by the external auth service; this service only
verifies them and extracts the ``sub`` claim as the user id.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.scribe.config import get_settings


def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """Mint an access token for ``user_id`` (used by tests and local tooling)."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    to_encode = {
        "sub": user_id,
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "type": "access",
    }
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """Decode and validate a JWT access token.

    Raises:
        HTTPException(401): If the token is invalid, expired, or has no subject.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception
    if not payload.get("sub"):
        raise credentials_exception
    return payload
