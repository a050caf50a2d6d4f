"""Tenant, tenant group and tenant role resources."""

import json
from typing import Any

from sqlalchemy import delete, func, select

from tenancy.core import identity
from tenancy.core.config import ACTION_CREATE, ACTION_DELETE, ACTION_READ, ACTION_UPDATE
from tenancy.errors import BadRequest, NotFound
from tenancy.models.permission import (
    Permission,
    TenantRole,
    TenantRolePermission,
    TenantRoleUser,
)
from tenancy.models.tenant import Tenant, TenantGroup, TenantGroupUser, TenantUser
from tenancy.models.user import User
from tenancy.services.base import ApiModel, insert_ignore, try_encode
from tenancy.services.collection import query_collection, query_single
from tenancy.services.schema import Attribute, ResourceSchema, validate_meta

TENANTS = ResourceSchema(
    "tenants",
    {
        "id": Attribute(writable=False, key=True),
        "owner": Attribute(rule="uuid", required=True, key=True),
        "name": Attribute(rule="string", required=True),
        "meta": Attribute(rule="object", json=True),
        "enabled": Attribute(rule="boolean"),
        "createdAt": Attribute(rule="datetime", writable=False, column="created_at"),
        "updatedAt": Attribute(rule="datetime", writable=False, column="updated_at"),
    },
)

TENANT_GROUPS = ResourceSchema(
    "tenantGroups",
    {
        "id": Attribute(writable=False, key=True),
        "name": Attribute(rule="string", required=True),
        "description": Attribute(rule="string"),
        "createdAt": Attribute(rule="datetime", writable=False, column="created_at"),
        "updatedAt": Attribute(rule="datetime", writable=False, column="updated_at"),
    },
)

TENANT_ROLES = ResourceSchema(
    "tenantRoles",
    {
        "id": Attribute(writable=False, key=True),
        "name": Attribute(rule="string", required=True),
        "description": Attribute(rule="string"),
        "createdAt": Attribute(rule="datetime", writable=False, column="created_at"),
        "updatedAt": Attribute(rule="datetime", writable=False, column="updated_at"),
    },
)


class TenantsModel(ApiModel):
    schema = TENANTS

    @property
    def meta_rules(self) -> dict[str, str]:
        return self.settings.required_meta.get("tenants", {})

    async def get_count(self) -> int:
        return (await self.session.execute(select(func.count()).select_from(Tenant))).scalar_one()

    async def id_exists(self, tenant_id: str) -> bool:
        key = try_encode(tenant_id)
        if key is None:
            return False
        return (await self.session.execute(select(Tenant.id).where(Tenant.id == key))).first() is not None

    async def create(self, attrs: dict[str, Any]) -> str:
        """Create a tenant. The owner is added as the first tenant user."""
        msg = "Unable to create tenant"
        attrs = dict(attrs)

        self.check_attrs(self.schema, attrs, msg)

        if self.meta_rules and not validate_meta(attrs.get("meta", {}), self.meta_rules):
            raise self.reject(BadRequest, msg, "Missing or invalid meta attribute(s)")

        owner_key = identity.encode(attrs["owner"])
        if (await self.session.get(User, owner_key)) is None:
            raise self.reject(BadRequest, msg, f"Owner ({attrs['owner']}) does not exist")

        tenant_id, key = identity.new_key()
        tenant = Tenant(
            id=key,
            owner=owner_key,
            name=attrs["name"],
            meta=json.dumps(attrs["meta"]) if "meta" in attrs else None,
        )
        if "enabled" in attrs:
            tenant.enabled = bool(attrs["enabled"])
        self.session.add(tenant)
        await self.session.flush()
        self.session.add(TenantUser(tenant_id=key, user_id=owner_key))
        await self.session.commit()

        resource = self.schema.only_allowed(attrs)
        await self.record(
            ACTION_CREATE,
            "Tenant created",
            {"action": "api.tenant.create", "tenant_id": tenant_id},
            "api.tenant.create",
            tenant_id,
            resource,
            resource=resource,
        )
        return tenant_id

    async def get(self, tenant_id: str, cols: list[str] | None = None) -> dict[str, Any]:
        msg = "Unable to get tenant"
        if not await self.id_exists(tenant_id):
            raise self.reject(NotFound, msg, "Tenant does not exist", tenant_id=tenant_id)

        try:
            result = await query_single(
                self.session, Tenant, self.schema, cols, where=[Tenant.id == identity.encode(tenant_id)]
            )
        except BadRequest as exc:
            raise self.reject(BadRequest, msg, exc.message, tenant_id=tenant_id) from exc

        await self.record(
            ACTION_READ,
            "Tenant read",
            {"action": "api.tenant.read", "tenant_id": [tenant_id]},
            "api.tenant.read",
            [tenant_id],
        )
        return result

    async def delete(self, tenant_id: str) -> None:
        msg = "Unable to delete tenant"
        if not await self.id_exists(tenant_id):
            raise self.reject(NotFound, msg, "Tenant ID does not exist", tenant_id=tenant_id)

        key = identity.encode(tenant_id)
        resource = await query_single(self.session, Tenant, self.schema, where=[Tenant.id == key])

        role_ids = select(TenantRole.id).where(TenantRole.tenant_id == key)
        await self.session.execute(
            delete(TenantRolePermission).where(TenantRolePermission.role_id.in_(role_ids))
        )
        for table in (TenantGroupUser, TenantRoleUser, TenantUser, TenantGroup, TenantRole):
            await self.session.execute(delete(table).where(table.tenant_id == key))
        await self.session.execute(delete(Tenant).where(Tenant.id == key))
        await self.session.commit()

        await self.record(
            ACTION_DELETE,
            "Tenant deleted",
            {"action": "api.tenant.delete", "tenant_id": tenant_id},
            "api.tenant.delete",
            tenant_id,
            resource,
            resource=resource,
        )


class TenantGroupsModel(ApiModel):
    schema = TENANT_GROUPS

    def __init__(self, session, settings, events, audit=None, tenants: TenantsModel | None = None):
        super().__init__(session, settings, events, audit)
        self.tenants = tenants or TenantsModel(session, settings, events, self.audit)

    async def id_exists(self, tenant_id: str, group_id: str) -> bool:
        tenant_key, group_key = try_encode(tenant_id), try_encode(group_id)
        if tenant_key is None or group_key is None:
            return False
        stmt = select(TenantGroup.id).where(
            TenantGroup.tenant_id == tenant_key, TenantGroup.id == group_key
        )
        return (await self.session.execute(stmt)).first() is not None

    async def create(self, tenant_id: str, attrs: dict[str, Any]) -> str:
        msg = "Unable to create tenant group"
        attrs = dict(attrs)

        if not await self.tenants.id_exists(tenant_id):
            raise self.reject(NotFound, msg, "Tenant does not exist", tenant_id=tenant_id)
        self.check_attrs(self.schema, attrs, msg, tenant_id=tenant_id)

        group_id, key = identity.new_key()
        self.session.add(
            TenantGroup(
                id=key,
                tenant_id=identity.encode(tenant_id),
                name=attrs["name"],
                description=attrs.get("description", ""),
            )
        )
        await self.session.commit()

        resource = self.schema.only_allowed(attrs)
        await self.record(
            ACTION_CREATE,
            "Tenant group created",
            {"action": "api.tenant.group.create", "tenant_id": tenant_id, "group_id": group_id},
            "api.tenant.group.create",
            tenant_id,
            group_id,
            resource,
            resource=resource,
        )
        return group_id

    async def get(self, tenant_id: str, group_id: str, cols: list[str] | None = None) -> dict[str, Any]:
        msg = "Unable to get tenant group"
        if not await self.id_exists(tenant_id, group_id):
            raise self.reject(
                NotFound, msg, "Group does not exist", tenant_id=tenant_id, group_id=group_id
            )

        try:
            result = await query_single(
                self.session,
                TenantGroup,
                self.schema,
                cols,
                where=[TenantGroup.id == identity.encode(group_id)],
            )
        except BadRequest as exc:
            raise self.reject(BadRequest, msg, exc.message, tenant_id=tenant_id) from exc

        await self.record(
            ACTION_READ,
            "Tenant group read",
            {"action": "api.tenant.group.read", "tenant_id": tenant_id, "group_id": [group_id]},
            "api.tenant.group.read",
            tenant_id,
            [group_id],
        )
        return result

    async def get_collection(self, tenant_id: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        msg = "Unable to get tenant group collection"
        if not await self.tenants.id_exists(tenant_id):
            raise self.reject(NotFound, msg, "Tenant does not exist", tenant_id=tenant_id)

        try:
            results = await query_collection(
                self.session,
                TenantGroup,
                self.schema,
                args,
                where=[TenantGroup.tenant_id == identity.encode(tenant_id)],
            )
        except BadRequest as exc:
            raise self.reject(BadRequest, msg, exc.message, tenant_id=tenant_id) from exc

        ids = [row["id"] for row in results["data"]]
        await self.record(
            ACTION_READ,
            "Tenant group read",
            {"action": "api.tenant.group.read", "tenant_id": tenant_id, "group_id": ids},
            "api.tenant.group.read",
            tenant_id,
            ids,
        )
        return results

    async def delete(self, tenant_id: str, group_id: str) -> None:
        msg = "Unable to delete tenant group"
        if not await self.id_exists(tenant_id, group_id):
            raise self.reject(
                NotFound, msg, "Group does not exist", tenant_id=tenant_id, group_id=group_id
            )

        key = identity.encode(group_id)
        resource = await query_single(self.session, TenantGroup, self.schema, where=[TenantGroup.id == key])

        await self.session.execute(delete(TenantGroupUser).where(TenantGroupUser.group_id == key))
        await self.session.execute(delete(TenantGroup).where(TenantGroup.id == key))
        await self.session.commit()

        await self.record(
            ACTION_DELETE,
            "Tenant group deleted",
            {"action": "api.tenant.group.delete", "tenant_id": tenant_id, "group_id": group_id},
            "api.tenant.group.delete",
            tenant_id,
            group_id,
            resource,
            resource=resource,
        )


class TenantRolesModel(ApiModel):
    schema = TENANT_ROLES

    def __init__(self, session, settings, events, audit=None, tenants: TenantsModel | None = None):
        super().__init__(session, settings, events, audit)
        self.tenants = tenants or TenantsModel(session, settings, events, self.audit)

    async def id_exists(self, tenant_id: str, role_id: str) -> bool:
        tenant_key, role_key = try_encode(tenant_id), try_encode(role_id)
        if tenant_key is None or role_key is None:
            return False
        stmt = select(TenantRole.id).where(
            TenantRole.tenant_id == tenant_key, TenantRole.id == role_key
        )
        return (await self.session.execute(stmt)).first() is not None

    async def create(self, tenant_id: str, attrs: dict[str, Any]) -> str:
        msg = "Unable to create tenant role"
        attrs = dict(attrs)

        if not await self.tenants.id_exists(tenant_id):
            raise self.reject(NotFound, msg, "Tenant does not exist", tenant_id=tenant_id)
        self.check_attrs(self.schema, attrs, msg, tenant_id=tenant_id)

        role_id, key = identity.new_key()
        self.session.add(
            TenantRole(
                id=key,
                tenant_id=identity.encode(tenant_id),
                name=attrs["name"],
                description=attrs.get("description", ""),
            )
        )
        await self.session.commit()

        resource = self.schema.only_allowed(attrs)
        await self.record(
            ACTION_CREATE,
            "Tenant role created",
            {"action": "api.tenant.role.create", "tenant_id": tenant_id, "role_id": role_id},
            "api.tenant.role.create",
            tenant_id,
            role_id,
            resource,
            resource=resource,
        )
        return role_id

    async def add_permissions(self, tenant_id: str, role_id: str, names: list[str]) -> None:
        """Grant the named permissions to a role. Unknown names are a BadRequest."""
        msg = "Unable to add permissions to tenant role"
        if not await self.id_exists(tenant_id, role_id):
            raise self.reject(
                NotFound, msg, "Role does not exist", tenant_id=tenant_id, role_id=role_id
            )

        stmt = select(Permission.name, Permission.id).where(Permission.name.in_(names))
        known = dict((await self.session.execute(stmt)).all())
        unknown = [n for n in names if n not in known]
        if unknown:
            raise self.reject(
                BadRequest,
                msg,
                f"Permission(s) do not exist: {', '.join(unknown)}",
                tenant_id=tenant_id,
                role_id=role_id,
            )

        role_key = identity.encode(role_id)
        for name in names:
            await insert_ignore(
                self.session,
                TenantRolePermission,
                {"role_id": role_key, "permission_id": known[name]},
            )
        await self.session.commit()

        await self.record(
            ACTION_UPDATE,
            "Permissions added to tenant role",
            {"tenant_id": tenant_id, "role_id": role_id, "permissions": names},
            "api.tenant.role.permissions.add",
            tenant_id,
            role_id,
            names,
        )
