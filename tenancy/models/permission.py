"""Permissions: global grants and tenant roles."""

from sqlmodel import Field, SQLModel

from tenancy.models.base import TimestampMixin, key_column


class Permission(TimestampMixin, SQLModel, table=True):
    __tablename__ = "permissions"

    id: bytes = Field(sa_column=key_column(primary_key=True))
    name: str = Field(max_length=255, nullable=False, unique=True, index=True)
    description: str = Field(default="", max_length=500)


class UserPermission(SQLModel, table=True):
    """Global (tenant-independent) grant."""

    __tablename__ = "user_permissions"

    user_id: bytes = Field(sa_column=key_column("users.id", primary_key=True))
    permission_id: bytes = Field(sa_column=key_column("permissions.id", primary_key=True))


class TenantRole(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenant_roles"

    id: bytes = Field(sa_column=key_column(primary_key=True))
    tenant_id: bytes = Field(sa_column=key_column("tenants.id", index=True))
    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", max_length=500)


class TenantRolePermission(SQLModel, table=True):
    __tablename__ = "tenant_role_permissions"

    role_id: bytes = Field(sa_column=key_column("tenant_roles.id", primary_key=True))
    permission_id: bytes = Field(sa_column=key_column("permissions.id", primary_key=True))


class TenantRoleUser(SQLModel, table=True):
    """Tenant-scoped grant: a user holds every permission of the role."""

    __tablename__ = "tenant_role_users"

    tenant_id: bytes = Field(sa_column=key_column("tenants.id", primary_key=True))
    role_id: bytes = Field(sa_column=key_column("tenant_roles.id", primary_key=True))
    user_id: bytes = Field(sa_column=key_column("users.id", primary_key=True))
