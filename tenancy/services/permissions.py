"""Permission resolution: global grants plus tenant-scoped role grants."""

from collections.abc import Iterable
from typing import Any

from sqlalchemy import select

from tenancy.core import identity
from tenancy.core.config import ACTION_CREATE, ACTION_UPDATE
from tenancy.errors import BadRequest, Conflict, NotFound
from tenancy.models.permission import (
    Permission,
    TenantRolePermission,
    TenantRoleUser,
    UserPermission,
)
from tenancy.models.user import User
from tenancy.services.base import ApiModel, insert_ignore, try_encode
from tenancy.services.schema import Attribute, ResourceSchema

PERMISSIONS = ResourceSchema(
    "permissions",
    {
        "id": Attribute(writable=False, key=True),
        "name": Attribute(rule="string", required=True),
        "description": Attribute(rule="string"),
        "createdAt": Attribute(rule="datetime", writable=False, column="created_at"),
        "updatedAt": Attribute(rule="datetime", writable=False, column="updated_at"),
    },
)


class PermissionEvaluator:
    """Read-side answers to "may this user do X (in this tenant)?"."""

    def __init__(self, session) -> None:
        self.session = session

    async def get_permissions(self, user_id: str, tenant_id: str = "") -> set[str]:
        """Union of the user's global grants and, with ``tenant_id``, that tenant's role grants."""
        user_key = try_encode(user_id)
        if user_key is None:
            return set()

        stmt = (
            select(Permission.name)
            .join(UserPermission, UserPermission.permission_id == Permission.id)
            .where(UserPermission.user_id == user_key)
        )
        names = set((await self.session.execute(stmt)).scalars())

        if tenant_id:
            tenant_key = try_encode(tenant_id)
            if tenant_key is not None:
                stmt = (
                    select(Permission.name)
                    .join(TenantRolePermission, TenantRolePermission.permission_id == Permission.id)
                    .join(TenantRoleUser, TenantRoleUser.role_id == TenantRolePermission.role_id)
                    .where(
                        TenantRoleUser.user_id == user_key,
                        TenantRoleUser.tenant_id == tenant_key,
                    )
                )
                names.update((await self.session.execute(stmt)).scalars())

        return names

    async def has_all(self, user_id: str, permissions: Iterable[str], tenant_id: str = "") -> bool:
        wanted = set(permissions)
        if not wanted:
            return True
        return wanted <= await self.get_permissions(user_id, tenant_id)

    async def has_any(self, user_id: str, permissions: Iterable[str], tenant_id: str = "") -> bool:
        wanted = set(permissions)
        if not wanted:
            return False
        return not wanted.isdisjoint(await self.get_permissions(user_id, tenant_id))


class PermissionsModel(ApiModel):
    """Permission definitions and global grants."""

    schema = PERMISSIONS

    async def create(self, attrs: dict[str, Any]) -> str:
        msg = "Unable to create permission"
        attrs = dict(attrs)
        self.check_attrs(self.schema, attrs, msg)

        name = attrs["name"]
        exists = await self.session.execute(select(Permission.id).where(Permission.name == name))
        if exists.first() is not None:
            raise self.reject(Conflict, msg, f"Permission ({name}) already exists")

        permission_id, key = identity.new_key()
        self.session.add(
            Permission(id=key, name=name, description=attrs.get("description", ""))
        )
        await self.session.commit()

        resource = self.schema.only_allowed(attrs)
        await self.record(
            ACTION_CREATE,
            "Permission created",
            {"action": "api.permission.create", "permission_id": permission_id},
            "api.permission.create",
            permission_id,
            resource,
            resource=resource,
        )
        return permission_id

    async def grant_global(self, user_id: str, names: list[str]) -> None:
        """Grant permissions to a user in every tenant. Unknown names are a BadRequest."""
        msg = "Unable to grant permissions"
        user_key = try_encode(user_id)
        if user_key is None or (await self.session.get(User, user_key)) is None:
            raise self.reject(NotFound, msg, "User does not exist", user_id=user_id)

        stmt = select(Permission.name, Permission.id).where(Permission.name.in_(names))
        known = dict((await self.session.execute(stmt)).all())
        unknown = [n for n in names if n not in known]
        if unknown:
            raise self.reject(
                BadRequest, msg, f"Permission(s) do not exist: {', '.join(unknown)}", user_id=user_id
            )

        for name in names:
            await insert_ignore(
                self.session, UserPermission, {"user_id": user_key, "permission_id": known[name]}
            )
        await self.session.commit()

        await self.record(
            ACTION_UPDATE,
            "Permissions granted to user",
            {"action": "api.user.permissions.add", "user_id": user_id, "permissions": names},
            "api.user.permissions.add",
            user_id,
            names,
        )
