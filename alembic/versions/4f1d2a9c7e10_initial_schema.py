"""initial schema: users, tenants, groups, roles, permissions, keys

Revision ID: 4f1d2a9c7e10
Revises: 
Create Date: 2026-10-18 09:12:44.118203

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4f1d2a9c7e10'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _key(name: str, *args, **kwargs) -> sa.Column:
    kwargs.setdefault("nullable", False)
    return sa.Column(name, sa.LargeBinary(16), *args, **kwargs)


def _ref(name: str, target: str, **kwargs) -> sa.Column:
    return _key(name, sa.ForeignKey(target, ondelete="CASCADE"), **kwargs)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        _key("id", primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("password", sa.String(), nullable=False),
        sa.Column("salt", sa.String(32), nullable=False),
        sa.Column("meta", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "user_meta",
        sa.Column("id", sa.String(255), primary_key=True),
        _ref("user_id", "users.id", primary_key=True),
        sa.Column("meta_value", sa.Text(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "user_keys",
        _key("id", primary_key=True),
        _ref("user_id", "users.id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(12), nullable=False),
        sa.Column("allowed_domains", sa.Text(), nullable=False),
        sa.Column("allowed_ips", sa.Text(), nullable=False),
        sa.Column("rate_limit", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_user_keys_user_id", "user_keys", ["user_id"])
    op.create_index("ix_user_keys_key_hash", "user_keys", ["key_hash"], unique=True)

    op.create_table(
        "tenants",
        _key("id", primary_key=True),
        _ref("owner", "users.id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("meta", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_tenants_owner", "tenants", ["owner"])

    op.create_table(
        "tenant_users",
        _ref("tenant_id", "tenants.id", primary_key=True),
        _ref("user_id", "users.id", primary_key=True),
    )

    op.create_table(
        "tenant_groups",
        _key("id", primary_key=True),
        _ref("tenant_id", "tenants.id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(500), nullable=False, server_default=""),
        *_timestamps(),
    )
    op.create_index("ix_tenant_groups_tenant_id", "tenant_groups", ["tenant_id"])

    op.create_table(
        "tenant_group_users",
        _ref("tenant_id", "tenants.id", primary_key=True),
        _ref("group_id", "tenant_groups.id", primary_key=True),
        _ref("user_id", "users.id", primary_key=True),
    )

    op.create_table(
        "permissions",
        _key("id", primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(500), nullable=False, server_default=""),
        *_timestamps(),
    )
    op.create_index("ix_permissions_name", "permissions", ["name"], unique=True)

    op.create_table(
        "user_permissions",
        _ref("user_id", "users.id", primary_key=True),
        _ref("permission_id", "permissions.id", primary_key=True),
    )

    op.create_table(
        "tenant_roles",
        _key("id", primary_key=True),
        _ref("tenant_id", "tenants.id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(500), nullable=False, server_default=""),
        *_timestamps(),
    )
    op.create_index("ix_tenant_roles_tenant_id", "tenant_roles", ["tenant_id"])

    op.create_table(
        "tenant_role_permissions",
        _ref("role_id", "tenant_roles.id", primary_key=True),
        _ref("permission_id", "permissions.id", primary_key=True),
    )

    op.create_table(
        "tenant_role_users",
        _ref("tenant_id", "tenants.id", primary_key=True),
        _ref("role_id", "tenant_roles.id", primary_key=True),
        _ref("user_id", "users.id", primary_key=True),
    )


def downgrade() -> None:
    for table in (
        "tenant_role_users",
        "tenant_role_permissions",
        "tenant_roles",
        "user_permissions",
        "permissions",
        "tenant_group_users",
        "tenant_groups",
        "tenant_users",
        "tenants",
        "user_keys",
        "user_meta",
        "users",
    ):
        op.drop_table(table)
