"""Users CRUD and API keys.

Users may read, update and delete themselves and create their own keys;
doing so for anyone else takes the matching ``users.*`` permission.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Request, status

from tenancy.api.deps import (
    AppSettings,
    Auth,
    CollectionArgs,
    Evaluator,
    model_factory,
    require_all,
    resource_link,
)
from tenancy.errors import Forbidden
from tenancy.models.user_key import UserKeyCreate, UserKeyCreated
from tenancy.services.auth import AuthModel, AuthResult
from tenancy.services.users import UsersModel

router = APIRouter(prefix="/users", tags=["users"])

Users = Annotated[UsersModel, Depends(model_factory(UsersModel))]
Keys = Annotated[AuthModel, Depends(model_factory(AuthModel))]
Attrs = Annotated[dict[str, Any], Body()]


async def _self_or(auth: AuthResult, evaluator: Evaluator, user_id: str, permission: str) -> None:
    if user_id.lower() == auth.user_id:
        return
    if not await evaluator.has_all(auth.user_id, [permission]):
        raise Forbidden("Insufficient permissions")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    attrs: Attrs,
    request: Request,
    users: Users,
    settings: AppSettings,
    _auth: AuthResult = Depends(require_all("users.create")),
) -> dict:
    user_id = await users.create(attrs, include_verification=settings.users_verify_email)
    return {"id": user_id, "links": {"self": resource_link(request, settings, f"/v1/users/{user_id}")}}


@router.get("")
async def list_users(
    args: CollectionArgs,
    users: Users,
    _auth: AuthResult = Depends(require_all("users.read")),
) -> dict:
    return await users.get_collection(args)


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    request: Request,
    users: Users,
    settings: AppSettings,
    auth: Auth,
    evaluator: Evaluator,
    fields: str | None = None,
) -> dict:
    await _self_or(auth, evaluator, user_id, "users.read")
    cols = [f.strip() for f in fields.split(",")] if fields else None
    data = await users.get(user_id, cols)
    return {"data": data, "links": {"self": resource_link(request, settings, f"/v1/users/{data['id']}")}}


@router.patch("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def update_user(
    user_id: str,
    attrs: Attrs,
    users: Users,
    auth: Auth,
    evaluator: Evaluator,
) -> None:
    # Enabling or disabling an account is never self-service
    if "enabled" in attrs:
        await _self_or(auth, evaluator, "", "users.update")
    await _self_or(auth, evaluator, user_id, "users.update")
    await users.update(user_id, attrs)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    users: Users,
    auth: Auth,
    evaluator: Evaluator,
) -> None:
    await _self_or(auth, evaluator, user_id, "users.delete")
    await users.delete(user_id)


@router.post("/{user_id}/keys", response_model=UserKeyCreated, status_code=status.HTTP_201_CREATED)
async def create_user_key(
    user_id: str,
    body: UserKeyCreate,
    keys: Keys,
    auth: Auth,
    evaluator: Evaluator,
) -> UserKeyCreated:
    """Create an API key. The raw key is returned once; store it securely."""
    await _self_or(auth, evaluator, user_id, "users.keys.create")
    return await keys.create_key(user_id, body)
