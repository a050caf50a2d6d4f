"""Tenants, tenant users and tenant group memberships."""

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Request, status

from tenancy.api.deps import (
    AppSettings,
    CollectionArgs,
    model_factory,
    require_all,
    require_any,
    resource_link,
)
from tenancy.models.tenant import RelationshipIds
from tenancy.services.auth import AuthResult
from tenancy.services.relationships import TenantGroupUsersModel, TenantUsersModel
from tenancy.services.tenants import TenantGroupsModel, TenantsModel

router = APIRouter(prefix="/tenants", tags=["tenants"])

Tenants = Annotated[TenantsModel, Depends(model_factory(TenantsModel))]
TenantUsers = Annotated[TenantUsersModel, Depends(model_factory(TenantUsersModel))]
Groups = Annotated[TenantGroupsModel, Depends(model_factory(TenantGroupsModel))]
GroupUsers = Annotated[TenantGroupUsersModel, Depends(model_factory(TenantGroupUsersModel))]
Attrs = Annotated[dict[str, Any], Body()]


# ── Tenants ──────────────────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tenant(
    attrs: Attrs,
    request: Request,
    tenants: Tenants,
    settings: AppSettings,
    auth: AuthResult = Depends(require_all("tenants.create")),
) -> dict:
    """Create a tenant, owned by the caller unless ``owner`` is given."""
    attrs = {"owner": auth.user_id, **attrs}
    tenant_id = await tenants.create(attrs)
    return {
        "id": tenant_id,
        "links": {"self": resource_link(request, settings, f"/v1/tenants/{tenant_id}")},
    }


@router.get("/{tenant_id}")
async def get_tenant(
    tenant_id: str,
    request: Request,
    tenants: Tenants,
    settings: AppSettings,
    _auth: AuthResult = Depends(require_any("tenants.read")),
) -> dict:
    data = await tenants.get(tenant_id)
    return {
        "data": data,
        "links": {"self": resource_link(request, settings, f"/v1/tenants/{data['id']}")},
    }


# ── Tenant users ─────────────────────────────────────────────

@router.post("/{tenant_id}/users", status_code=status.HTTP_204_NO_CONTENT)
async def add_tenant_users(
    tenant_id: str,
    body: RelationshipIds,
    tenant_users: TenantUsers,
    _auth: AuthResult = Depends(require_all("tenant.users.add")),
) -> None:
    await tenant_users.add(tenant_id, body.ids)


@router.delete("/{tenant_id}/users", status_code=status.HTTP_204_NO_CONTENT)
async def remove_tenant_users(
    tenant_id: str,
    body: RelationshipIds,
    tenant_users: TenantUsers,
    _auth: AuthResult = Depends(require_all("tenant.users.remove")),
) -> None:
    await tenant_users.remove(tenant_id, body.ids)


# ── Tenant groups ────────────────────────────────────────────

@router.post("/{tenant_id}/groups", status_code=status.HTTP_201_CREATED)
async def create_tenant_group(
    tenant_id: str,
    attrs: Attrs,
    request: Request,
    groups: Groups,
    settings: AppSettings,
    _auth: AuthResult = Depends(require_all("tenant.groups.create")),
) -> dict:
    group_id = await groups.create(tenant_id, attrs)
    link = f"/v1/tenants/{tenant_id}/groups/{group_id}"
    return {"id": group_id, "links": {"self": resource_link(request, settings, link)}}


@router.get("/{tenant_id}/groups/{group_id}/users")
async def list_group_users(
    tenant_id: str,
    group_id: str,
    args: CollectionArgs,
    group_users: GroupUsers,
    _auth: AuthResult = Depends(require_any("tenant.groups.users.read", "tenant.groups.users.update")),
) -> dict:
    return await group_users.get_collection(tenant_id, group_id, args)


@router.post("/{tenant_id}/groups/{group_id}/users", status_code=status.HTTP_204_NO_CONTENT)
async def add_group_users(
    tenant_id: str,
    group_id: str,
    body: RelationshipIds,
    group_users: GroupUsers,
    _auth: AuthResult = Depends(require_all("tenant.groups.users.update")),
) -> None:
    await group_users.add(tenant_id, group_id, body.ids)


@router.delete("/{tenant_id}/groups/{group_id}/users", status_code=status.HTTP_204_NO_CONTENT)
async def remove_group_users(
    tenant_id: str,
    group_id: str,
    body: RelationshipIds,
    group_users: GroupUsers,
    _auth: AuthResult = Depends(require_all("tenant.groups.users.update")),
) -> None:
    await group_users.remove(tenant_id, group_id, body.ids)
