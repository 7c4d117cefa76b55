"""
Caller identity for FastAPI routes.

The acting user comes from the X-User-Id header, set by the upstream gateway
that performs authentication.
"""
from __future__ import annotations

from fastapi import Header, HTTPException, status


async def get_current_user_id(
    x_user_id: str = Header(..., alias="X-User-Id"),
) -> str:
    """Extract the acting user ID from the request header. Raises 401 if blank."""
    if not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header.",
        )
    return x_user_id.strip()
