"""Staff identity dependency

Authentication lives in the host application, which forwards the signed-in
staff user's id in a header.
"""
from typing import Optional

from fastapi import Header, HTTPException


def require_staff(x_staff_user_id: Optional[str] = Header(None, alias="X-Staff-User-Id")) -> int:
    """Dependency: Require a staff user id, return it"""
    if not x_staff_user_id:
        raise HTTPException(401, "Not authenticated. Please log in.")
    try:
        return int(x_staff_user_id)
    except ValueError:
        raise HTTPException(401, "Invalid staff user id")
