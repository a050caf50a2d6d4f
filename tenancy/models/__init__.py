"""Import all models so SQLModel.metadata picks them up."""

from tenancy.models.permission import (
    Permission,
    TenantRole,
    TenantRolePermission,
    TenantRoleUser,
    UserPermission,
)
from tenancy.models.tenant import (
    RelationshipIds,
    Tenant,
    TenantGroup,
    TenantGroupUser,
    TenantUser,
)
from tenancy.models.user import User, UserMeta
from tenancy.models.user_key import UserKey, UserKeyCreate, UserKeyCreated

__all__ = [
    "Permission",
    "RelationshipIds",
    "Tenant",
    "TenantGroup",
    "TenantGroupUser",
    "TenantRole",
    "TenantRolePermission",
    "TenantRoleUser",
    "TenantUser",
    "User",
    "UserKey",
    "UserKeyCreate",
    "UserKeyCreated",
    "UserMeta",
    "UserPermission",
]
