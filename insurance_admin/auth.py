"""Authentication helpers for request-scoped admin context."""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from insurance_admin.security import decode_access_token
from insurance_admin.utils import raise_forbidden, raise_unauthorized

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class AdminRole(str, Enum):
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class AdminContext:
    admin_id: UUID
    role: AdminRole

    @property
    def is_super_admin(self) -> bool:
        return self.role is AdminRole.SUPER_ADMIN


async def get_current_admin(token: str = Depends(oauth2_scheme)) -> AdminContext:
    """Resolve the calling admin from the bearer token."""
    payload = decode_access_token(token)
    if not payload:
        raise_unauthorized("Could not validate credentials")

    admin_id = payload.get("sub")
    if not admin_id:
        raise_unauthorized("Token missing subject")

    try:
        admin_uuid = UUID(admin_id)
    except ValueError as exc:
        raise_unauthorized("Invalid admin ID format in token", cause=exc)

    try:
        role = AdminRole(payload.get("role", AdminRole.ADMIN.value))
    except ValueError as exc:
        raise_unauthorized("Unknown admin role in token", cause=exc)

    return AdminContext(admin_id=admin_uuid, role=role)


def require_super_admin(admin: AdminContext) -> None:
    if not admin.is_super_admin:
        raise_forbidden("Only super admins can permanently delete records")
