from typing import Optional

from fastapi import Header

from friendsync.utils.exceptions import UnauthenticatedError


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Opaque id of the caller, set by the authenticating gateway"""
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError("Not authenticated")
    return x_user_id.strip()
