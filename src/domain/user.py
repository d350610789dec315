"""User roles and caller identity."""

from enum import StrEnum

from pydantic import BaseModel, Field


class UserRole(StrEnum):
    """User role within a tenant."""

    ADMIN = "admin"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    EMPLOYEE = "employee"


PRIVILEGED_ROLES = frozenset({UserRole.ADMIN, UserRole.MANAGER})


class Identity(BaseModel):
    """Verified caller identity supplied by the upstream resolver."""

    tenant_id: str = Field(..., min_length=1, description="Tenant the caller acts in")
    user_id: str = Field(..., min_length=1, description="Caller user ID")
    role: UserRole = Field(default=UserRole.EMPLOYEE, description="Caller role within the tenant")

    @property
    def is_privileged(self) -> bool:
        """Admins and managers see and manage the whole tenant."""
        return self.role in PRIVILEGED_ROLES
