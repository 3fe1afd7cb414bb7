from __future__ import annotations

from fastapi import HTTPException, Request

from ...auth.cognito import VerifiedUser
from .roles import ROLE_ADMIN, has_any_role, is_admin


def current_user(request: Request) -> VerifiedUser:
    user = getattr(request.state, "user", None)
    if not user or not getattr(user, "sub", None):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_roles(request: Request, *roles: str) -> VerifiedUser:
    """Return the caller if they hold one of `roles` (admins always pass)."""
    user = current_user(request)
    wanted = set(roles) | {ROLE_ADMIN}
    if not has_any_role(user.roles, wanted):
        raise HTTPException(status_code=403, detail="Insufficient role")
    return user


def require_admin(request: Request) -> VerifiedUser:
    return require_roles(request, ROLE_ADMIN)


def caller_is_admin(user: VerifiedUser) -> bool:
    return is_admin(user.roles)
