"""Membership relationships between users and tenant resources.

Adding members is strict: every id must be a valid candidate or the whole
batch is rolled back. Removing members is idempotent cleanup: malformed ids
and absent memberships are skipped without failing the batch.
"""

from typing import Any

from sqlalchemy import delete, func, select

from tenancy.core import identity
from tenancy.core.config import ACTION_READ, ACTION_UPDATE
from tenancy.errors import BadRequest, NotFound
from tenancy.models.permission import TenantRoleUser
from tenancy.models.tenant import TenantGroupUser, TenantUser
from tenancy.models.user import User
from tenancy.services.base import ApiModel, insert_ignore, transaction, try_encode
from tenancy.services.collection import query_collection
from tenancy.services.tenants import TenantGroupsModel, TenantRolesModel, TenantsModel
from tenancy.services.users import USERS


class ScopedRelationshipModel(ApiModel):
    """Users attached to a resource that itself lives inside a tenant.

    Rows are keyed by ``(tenant_id, <resource>_id, user_id)``. Subclasses
    name the membership table and resource column and say how to check that
    the scoping resource exists.
    """

    table: type
    resource_column: str
    resource_label: str
    label: str
    event_prefix: str

    related_table = User
    related_schema = USERS

    def __init__(self, session, settings, events, audit=None, tenant_users=None):
        super().__init__(session, settings, events, audit)
        self.tenant_users = tenant_users or TenantUsersModel(session, settings, events, self.audit)

    async def resource_exists(self, scope_id: str, resource_id: str) -> bool:
        raise NotImplementedError

    async def candidate_ids(self, scope_id: str) -> set[str]:
        """Every user id that may be attached inside ``scope_id``."""
        return set(await self.tenant_users.get_all_ids(scope_id))

    def _key(self, scope_key: bytes, resource_key: bytes) -> list:
        return [
            self.table.tenant_id == scope_key,
            getattr(self.table, self.resource_column) == resource_key,
        ]

    def _context(self, scope_id: str, resource_id: str, **extra: Any) -> dict[str, Any]:
        return {"tenant_id": scope_id, self.resource_column: resource_id, **extra}

    async def _require_resource(self, scope_id: str, resource_id: str, msg: str) -> None:
        if not await self.resource_exists(scope_id, resource_id):
            raise self.reject(
                NotFound,
                msg,
                f"{self.resource_label} ID ({resource_id}) does not exist",
                **self._context(scope_id, resource_id),
            )

    async def get_count(self, scope_id: str, resource_id: str) -> int:
        scope_key, resource_key = try_encode(scope_id), try_encode(resource_id)
        if scope_key is None or resource_key is None:
            return 0
        stmt = select(func.count()).select_from(self.table).where(*self._key(scope_key, resource_key))
        return (await self.session.execute(stmt)).scalar_one()

    async def has(self, scope_id: str, resource_id: str, relationship_id: str) -> bool:
        keys = [try_encode(scope_id), try_encode(resource_id), try_encode(relationship_id)]
        if None in keys:
            return False
        scope_key, resource_key, user_key = keys
        stmt = select(self.table.user_id).where(
            *self._key(scope_key, resource_key), self.table.user_id == user_key
        )
        return (await self.session.execute(stmt)).first() is not None

    async def add(self, scope_id: str, resource_id: str, relationship_ids: list[str]) -> None:
        """Attach users to the resource, all or nothing.

        Raises BadRequest naming the first id outside the candidate set, after
        rolling back every row of the batch. Re-adding an existing member is
        a no-op.
        """
        msg = f"Unable to add users to {self.label}"
        await self._require_resource(scope_id, resource_id, msg)

        valid = await self.candidate_ids(scope_id)
        scope_key, resource_key = identity.encode(scope_id), identity.encode(resource_id)

        async with transaction(self.session):
            for user in relationship_ids:
                if not isinstance(user, str) or user.lower() not in valid:
                    raise self.reject(
                        BadRequest,
                        msg,
                        f"User ID ({user}) is invalid or does not exist",
                        **self._context(scope_id, resource_id, user_id=user),
                    )
                await insert_ignore(
                    self.session,
                    self.table,
                    {
                        "tenant_id": scope_key,
                        self.resource_column: resource_key,
                        "user_id": identity.encode(user),
                    },
                )

        await self.record(
            ACTION_UPDATE,
            f"Users added to {self.label}",
            self._context(scope_id, resource_id, user_ids=relationship_ids),
            f"{self.event_prefix}.add",
            scope_id,
            resource_id,
            relationship_ids,
        )

    async def remove(self, scope_id: str, resource_id: str, relationship_ids: list[str]) -> None:
        """Detach users from the resource. Malformed ids and non-members are skipped."""
        msg = f"Unable to remove users from {self.label}"
        await self._require_resource(scope_id, resource_id, msg)

        scope_key, resource_key = identity.encode(scope_id), identity.encode(resource_id)

        async with transaction(self.session):
            for user in relationship_ids:
                user_key = try_encode(user)
                if user_key is None:
                    continue
                await self.session.execute(
                    delete(self.table).where(
                        *self._key(scope_key, resource_key), self.table.user_id == user_key
                    )
                )

        await self.record(
            ACTION_UPDATE,
            f"Users removed from {self.label}",
            self._context(scope_id, resource_id, user_ids=relationship_ids),
            f"{self.event_prefix}.remove",
            scope_id,
            resource_id,
            relationship_ids,
        )

    async def get_collection(
        self, scope_id: str, resource_id: str, args: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        msg = f"Unable to get {self.label} users collection"
        await self._require_resource(scope_id, resource_id, msg)

        scope_key, resource_key = identity.encode(scope_id), identity.encode(resource_id)
        try:
            results = await query_collection(
                self.session,
                self.related_table,
                self.related_schema,
                args,
                joins=[(self.table, self.related_table.id == self.table.user_id)],
                where=self._key(scope_key, resource_key),
            )
        except BadRequest as exc:
            raise self.reject(
                BadRequest, msg, exc.message, **self._context(scope_id, resource_id)
            ) from exc

        ids = [row["id"] for row in results["data"]]
        await self.record(
            ACTION_READ,
            f"{self.label.capitalize()} users read",
            self._context(scope_id, resource_id, user_ids=ids),
            f"{self.event_prefix}.read",
            scope_id,
            resource_id,
            ids,
        )
        return results


class TenantGroupUsersModel(ScopedRelationshipModel):
    table = TenantGroupUser
    resource_column = "group_id"
    resource_label = "Group"
    label = "tenant group"
    event_prefix = "api.tenant.group.users"

    def __init__(self, session, settings, events, audit=None, tenant_users=None, groups=None):
        super().__init__(session, settings, events, audit, tenant_users)
        self.groups = groups or TenantGroupsModel(session, settings, events, self.audit)

    async def resource_exists(self, scope_id: str, resource_id: str) -> bool:
        return await self.groups.id_exists(scope_id, resource_id)


class TenantRoleUsersModel(ScopedRelationshipModel):
    table = TenantRoleUser
    resource_column = "role_id"
    resource_label = "Role"
    label = "tenant role"
    event_prefix = "api.tenant.role.users"

    def __init__(self, session, settings, events, audit=None, tenant_users=None, roles=None):
        super().__init__(session, settings, events, audit, tenant_users)
        self.roles = roles or TenantRolesModel(session, settings, events, self.audit)

    async def resource_exists(self, scope_id: str, resource_id: str) -> bool:
        return await self.roles.id_exists(scope_id, resource_id)


class TenantUsersModel(ApiModel):
    """Users belonging to a tenant."""

    def __init__(self, session, settings, events, audit=None, tenants: TenantsModel | None = None):
        super().__init__(session, settings, events, audit)
        self.tenants = tenants or TenantsModel(session, settings, events, self.audit)

    async def has(self, tenant_id: str, user_id: str) -> bool:
        tenant_key, user_key = try_encode(tenant_id), try_encode(user_id)
        if tenant_key is None or user_key is None:
            return False
        stmt = select(TenantUser.user_id).where(
            TenantUser.tenant_id == tenant_key, TenantUser.user_id == user_key
        )
        return (await self.session.execute(stmt)).first() is not None

    async def get_all_ids(self, tenant_id: str) -> list[str]:
        tenant_key = try_encode(tenant_id)
        if tenant_key is None:
            return []
        stmt = select(TenantUser.user_id).where(TenantUser.tenant_id == tenant_key)
        return [identity.decode(k) for k in (await self.session.execute(stmt)).scalars()]

    async def _require_tenant(self, tenant_id: str, msg: str) -> bytes:
        if not await self.tenants.id_exists(tenant_id):
            raise self.reject(
                NotFound, msg, f"Tenant ID ({tenant_id}) does not exist", tenant_id=tenant_id
            )
        return identity.encode(tenant_id)

    async def add(self, tenant_id: str, user_ids: list[str]) -> None:
        """Add existing users to the tenant, all or nothing."""
        msg = "Unable to add users to tenant"
        tenant_key = await self._require_tenant(tenant_id, msg)

        keys = [try_encode(u) for u in user_ids]
        stmt = select(User.id).where(User.id.in_([k for k in keys if k is not None]))
        existing = set((await self.session.execute(stmt)).scalars())

        async with transaction(self.session):
            for user, key in zip(user_ids, keys):
                if key is None or key not in existing:
                    raise self.reject(
                        BadRequest,
                        msg,
                        f"User ID ({user}) is invalid or does not exist",
                        tenant_id=tenant_id,
                        user_id=user,
                    )
                await insert_ignore(
                    self.session, TenantUser, {"tenant_id": tenant_key, "user_id": key}
                )

        await self.record(
            ACTION_UPDATE,
            "Users added to tenant",
            {"tenant_id": tenant_id, "user_ids": user_ids},
            "api.tenant.users.add",
            tenant_id,
            user_ids,
        )

    async def remove(self, tenant_id: str, user_ids: list[str]) -> None:
        """Remove users from the tenant, along with their group and role memberships there."""
        msg = "Unable to remove users from tenant"
        tenant_key = await self._require_tenant(tenant_id, msg)

        async with transaction(self.session):
            for user in user_ids:
                user_key = try_encode(user)
                if user_key is None:
                    continue
                for table in (TenantGroupUser, TenantRoleUser, TenantUser):
                    await self.session.execute(
                        delete(table).where(table.tenant_id == tenant_key, table.user_id == user_key)
                    )

        await self.record(
            ACTION_UPDATE,
            "Users removed from tenant",
            {"tenant_id": tenant_id, "user_ids": user_ids},
            "api.tenant.users.remove",
            tenant_id,
            user_ids,
        )

    async def get_collection(self, tenant_id: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        msg = "Unable to get tenant users collection"
        tenant_key = await self._require_tenant(tenant_id, msg)

        try:
            results = await query_collection(
                self.session,
                User,
                USERS,
                args,
                joins=[(TenantUser, User.id == TenantUser.user_id)],
                where=[TenantUser.tenant_id == tenant_key],
            )
        except BadRequest as exc:
            raise self.reject(BadRequest, msg, exc.message, tenant_id=tenant_id) from exc

        ids = [row["id"] for row in results["data"]]
        await self.record(
            ACTION_READ,
            "Tenant users read",
            {"tenant_id": tenant_id, "user_ids": ids},
            "api.tenant.users.read",
            tenant_id,
            ids,
        )
        return results
