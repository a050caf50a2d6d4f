"""Tenants, tenant groups and their memberships."""

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

from tenancy.models.base import TimestampMixin, key_column


class Tenant(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenants"

    id: bytes = Field(sa_column=key_column(primary_key=True))
    owner: bytes = Field(sa_column=key_column("users.id", index=True))
    name: str = Field(max_length=255, nullable=False)
    meta: str | None = Field(default=None, sa_column=Column(Text, nullable=True))  # JSON object
    enabled: bool = Field(default=True)


class TenantUser(SQLModel, table=True):
    __tablename__ = "tenant_users"

    tenant_id: bytes = Field(sa_column=key_column("tenants.id", primary_key=True))
    user_id: bytes = Field(sa_column=key_column("users.id", primary_key=True))


class TenantGroup(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenant_groups"

    id: bytes = Field(sa_column=key_column(primary_key=True))
    tenant_id: bytes = Field(sa_column=key_column("tenants.id", index=True))
    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", max_length=500)


class TenantGroupUser(SQLModel, table=True):
    __tablename__ = "tenant_group_users"

    tenant_id: bytes = Field(sa_column=key_column("tenants.id", primary_key=True))
    group_id: bytes = Field(sa_column=key_column("tenant_groups.id", primary_key=True))
    user_id: bytes = Field(sa_column=key_column("users.id", primary_key=True))


# ── Pydantic schemas ─────────────────────────────────────────

class RelationshipIds(SQLModel):
    """Body of batch add / remove requests."""
    ids: list[str]
