"""
Caller identity as forwarded by the authenticating gateway.

The gateway has already verified the caller; this service only reads the
``X-User-ID`` and ``X-User-Role`` headers it sets.
"""
from typing import Optional

from fastapi import Depends, Header
from pydantic import BaseModel

from cartflow.exceptions import ForbiddenError, UnauthorizedError

ADMIN_ROLE = "admin"


class CallerIdentity(BaseModel):
    user_id: str
    is_admin: bool = False


def get_caller(
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="Authenticated user identifier"),
    role: Optional[str] = Header(None, alias="X-User-Role", description="Authenticated user role")
) -> Optional[CallerIdentity]:
    """Identity of the caller, or None for anonymous requests"""
    if not user_id or not user_id.strip():
        return None
    is_admin = (role or "").strip().lower() == ADMIN_ROLE
    return CallerIdentity(user_id=user_id.strip(), is_admin=is_admin)


def require_user(caller: Optional[CallerIdentity] = Depends(get_caller)) -> CallerIdentity:
    if caller is None:
        raise UnauthorizedError("Not authorized, no user identity")
    return caller


def require_admin(caller: CallerIdentity = Depends(require_user)) -> CallerIdentity:
    if not caller.is_admin:
        raise ForbiddenError("Not authorized as an admin")
    return caller
