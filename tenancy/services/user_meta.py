"""User meta: free-form key/value records owned by a user."""

import json
from typing import Any

from sqlalchemy import delete, select

from tenancy.core import identity
from tenancy.core.config import ACTION_DELETE, ACTION_READ, ACTION_UPDATE
from tenancy.errors import BadRequest, NotFound
from tenancy.models.base import utcnow
from tenancy.models.user import User, UserMeta
from tenancy.services.base import ApiModel, try_encode
from tenancy.services.collection import query_collection, query_single
from tenancy.services.schema import Attribute, ResourceSchema

USER_META = ResourceSchema(
    "userMeta",
    {
        "id": Attribute(rule="string", writable=False),
        "metaValue": Attribute(writable=False, json=True, column="meta_value"),
        "createdAt": Attribute(rule="datetime", writable=False, column="created_at"),
        "updatedAt": Attribute(rule="datetime", writable=False, column="updated_at"),
    },
)

# Ids with this prefix belong to internal records (e.g. email verification)
PROTECTED_PREFIX = "00-"


class UserMetaModel(ApiModel):
    schema = USER_META

    async def _require_user(self, user_id: str, msg: str) -> bytes:
        key = try_encode(user_id)
        if key is None or (await self.session.get(User, key)) is None:
            raise self.reject(NotFound, msg, "User does not exist", user_id=user_id)
        return key

    def _check_meta_id(self, meta_id: str, msg: str, user_id: str) -> None:
        if not meta_id or meta_id.startswith(PROTECTED_PREFIX) or len(meta_id) > 255:
            raise self.reject(BadRequest, msg, "Invalid meta ID", user_id=user_id, meta_id=meta_id)

    async def upsert(self, user_id: str, meta_id: str, value: Any) -> None:
        msg = "Unable to update user meta"
        key = await self._require_user(user_id, msg)
        self._check_meta_id(meta_id, msg, user_id)

        stmt = select(UserMeta).where(UserMeta.id == meta_id, UserMeta.user_id == key)
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = UserMeta(id=meta_id, user_id=key, meta_value=json.dumps(value))
        else:
            row.meta_value = json.dumps(value)
            row.updated_at = utcnow()
        self.session.add(row)
        await self.session.commit()

        await self.record(
            ACTION_UPDATE,
            "User meta updated",
            {"action": "api.user.meta.update", "user_id": user_id, "meta_id": meta_id},
            "api.user.meta.update",
            user_id,
            meta_id,
            value,
            resource=value,
        )

    async def get(self, user_id: str, meta_id: str) -> dict[str, Any]:
        msg = "Unable to get user meta"
        key = await self._require_user(user_id, msg)
        self._check_meta_id(meta_id, msg, user_id)
        try:
            result = await query_single(
                self.session,
                UserMeta,
                self.schema,
                where=[UserMeta.user_id == key, UserMeta.id == meta_id],
            )
        except NotFound as exc:
            raise self.reject(
                NotFound, msg, "Meta does not exist", user_id=user_id, meta_id=meta_id
            ) from exc

        await self.record(
            ACTION_READ,
            "User meta read",
            {"action": "api.user.meta.read", "user_id": user_id, "meta_id": [meta_id]},
            "api.user.meta.read",
            user_id,
            [meta_id],
        )
        return result

    async def get_collection(self, user_id: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        msg = "Unable to get user meta collection"
        key = await self._require_user(user_id, msg)
        try:
            results = await query_collection(
                self.session,
                UserMeta,
                self.schema,
                args,
                where=[UserMeta.user_id == key, UserMeta.id.not_like(PROTECTED_PREFIX + "%")],
            )
        except BadRequest as exc:
            raise self.reject(BadRequest, msg, exc.message, user_id=user_id) from exc

        ids = [row["id"] for row in results["data"]]
        await self.record(
            ACTION_READ,
            "User meta read",
            {"action": "api.user.meta.read", "user_id": user_id, "meta_id": ids},
            "api.user.meta.read",
            user_id,
            ids,
        )
        return results

    async def delete(self, user_id: str, meta_id: str) -> None:
        msg = "Unable to delete user meta"
        key = await self._require_user(user_id, msg)
        self._check_meta_id(meta_id, msg, user_id)

        result = await self.session.execute(
            delete(UserMeta).where(UserMeta.user_id == key, UserMeta.id == meta_id)
        )
        if result.rowcount == 0:
            await self.session.rollback()
            raise self.reject(NotFound, msg, "Meta does not exist", user_id=user_id, meta_id=meta_id)
        await self.session.commit()

        await self.record(
            ACTION_DELETE,
            "User meta deleted",
            {"action": "api.user.meta.delete", "user_id": identity.decode(key), "meta_id": meta_id},
            "api.user.meta.delete",
            user_id,
            meta_id,
        )
