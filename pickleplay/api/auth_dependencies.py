"""
Authentication dependencies for FastAPI routes.

Authentication itself happens upstream; the gateway forwards the verified
user id in the X-User-Id header and this service trusts it.
"""

from typing import Optional
from fastapi import Header, HTTPException, status


async def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> dict:
    """
    Dependency to get the current authenticated user.

    Returns:
        User dictionary with the caller's id

    Raises:
        HTTPException: If no authenticated user id was forwarded
    """
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return {"id": x_user_id.strip()}
