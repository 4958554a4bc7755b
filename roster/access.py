"""Authorization boundary.

Authentication happens upstream; the gateway forwards the caller's staff id
and role as headers. Mutating operations need an elevated role, reads only
an identified caller.
"""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header

from .config import settings


class AuthenticationRequiredError(Exception):
    """Raised when the request carries no caller identity."""
    pass


class AccessDeniedError(Exception):
    """Raised when the caller's role may not perform the operation."""
    pass


@dataclass(frozen=True)
class UserAccess:
    """Identity of the calling staff member."""
    staff_id: int | None
    role: str | None

    @property
    def is_authenticated(self) -> bool:
        return self.staff_id is not None

    @property
    def is_data_admin(self) -> bool:
        return self.is_authenticated and self.role in settings.auth.admin_roles


async def get_user_access(
    x_staff_id: str | None = Header(default=None),
    x_staff_role: str | None = Header(default=None),
) -> UserAccess:
    staff_id: int | None = None
    if x_staff_id and x_staff_id.strip().isdigit():
        staff_id = int(x_staff_id.strip())
    role = x_staff_role.strip().lower() if x_staff_role and x_staff_role.strip() else None
    return UserAccess(staff_id=staff_id, role=role)


async def require_authenticated(access: UserAccess = Depends(get_user_access)) -> UserAccess:
    if not access.is_authenticated:
        raise AuthenticationRequiredError("Authentication required")
    return access


async def require_data_admin(access: UserAccess = Depends(require_authenticated)) -> UserAccess:
    """Caller must hold one of the configured admin roles."""
    if not access.is_data_admin:
        raise AccessDeniedError("Access denied. Only administrators can manage voter data.")
    return access
