"""FastAPI dependencies for caller identity.

Authentication is owned by an external service; requests carry its
Bearer JWT and we only verify it and read the ``sub`` claim.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status
from pydantic import BaseModel

from src.scribe.core.security import verify_token


class CurrentUser(BaseModel):
    user_id: str


async def get_current_user(request: Request) -> CurrentUser:
    """Extract the caller from the Authorization header.

    Raises:
        HTTPException(401): missing or invalid token.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_token(auth_header[7:])
    return CurrentUser(user_id=str(payload["sub"]))
