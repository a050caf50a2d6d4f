"""Users resource model.

Handles attribute validation, password hashing, email uniqueness and
verification, and the audit/event contract for every mutation.
"""

import hmac
import json
import logging
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core import identity
from tenancy.core.audit import AuditLog
from tenancy.core.config import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_READ,
    ACTION_UPDATE,
    Settings,
)
from tenancy.core.events import EventDispatcher
from tenancy.core.security import (
    PasswordPolicy,
    default_password_policy,
    generate_key,
    hash_password,
    verify_password,
)
from tenancy.errors import BadRequest, Conflict, NotFound, UnexpectedError
from tenancy.models.base import utcnow
from tenancy.models.permission import TenantRoleUser, UserPermission
from tenancy.models.tenant import Tenant, TenantGroupUser, TenantUser
from tenancy.models.user import User, UserMeta
from tenancy.models.user_key import UserKey
from tenancy.services.base import ApiModel, try_encode
from tenancy.services.collection import query_collection, query_single
from tenancy.services.schema import Attribute, ResourceSchema, validate_meta

logger = logging.getLogger(__name__)

USERS = ResourceSchema(
    "users",
    {
        "id": Attribute(writable=False, key=True),
        "email": Attribute(rule="email", required=True),
        "password": Attribute(rule="string", required=True, secret=True, selectable=False),
        "meta": Attribute(rule="object", json=True),
        "enabled": Attribute(rule="boolean"),
        "createdAt": Attribute(rule="datetime", writable=False, column="created_at"),
        "updatedAt": Attribute(rule="datetime", writable=False, column="updated_at"),
    },
)

EMAIL_VERIFICATION_META_ID = "00-email-verification"
SALT_LENGTH = 16
VERIFICATION_KEY_LENGTH = 8

PASSWORD_UNCHANGED = "**UNCHANGED**"
PASSWORD_UPDATED = "**UPDATED**"


class UsersModel(ApiModel):
    schema = USERS

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        events: EventDispatcher,
        audit: AuditLog | None = None,
        password_policy: PasswordPolicy | None = None,
    ) -> None:
        super().__init__(session, settings, events, audit)
        self.password_policy = password_policy or default_password_policy(
            settings.password_min_length
        )

    @property
    def meta_rules(self) -> dict[str, str]:
        return self.settings.required_meta.get("users", {})

    # ── Lookups ──────────────────────────────────────────────

    async def get_count(self) -> int:
        return (await self.session.execute(select(func.count()).select_from(User))).scalar_one()

    async def id_exists(self, user_id: str) -> bool:
        key = try_encode(user_id)
        if key is None:
            return False
        stmt = select(User.id).where(User.id == key)
        return (await self.session.execute(stmt)).first() is not None

    async def email_exists(self, email: str, exclude_id: str = "") -> bool:
        stmt = select(User.id).where(User.email == email.lower())
        if exclude_id:
            key = try_encode(exclude_id)
            if key is None:
                return False
            stmt = stmt.where(User.id != key)
        return (await self.session.execute(stmt)).first() is not None

    async def is_enabled(self, user_id: str) -> bool:
        key = try_encode(user_id)
        if key is None:
            return False
        stmt = select(User.enabled).where(User.id == key)
        return bool((await self.session.execute(stmt)).scalar_one_or_none())

    async def get_owned_tenant_ids(self, user_id: str) -> list[str]:
        key = try_encode(user_id)
        if key is None:
            return []
        stmt = select(Tenant.id).where(Tenant.owner == key)
        return [identity.decode(k) for k in (await self.session.execute(stmt)).scalars()]

    async def get_salt(self, user_id: str) -> str:
        key = try_encode(user_id)
        if key is None:
            return ""
        stmt = select(User.salt).where(User.id == key)
        return (await self.session.execute(stmt)).scalar_one_or_none() or ""

    async def verify_password(self, user: str | dict[str, Any], password: str) -> bool:
        """Check ``password`` against a user id or an entire user row."""
        if isinstance(user, str):
            try:
                user = await self.get_entire(user, skip_log=True)
            except NotFound:
                return False
        return verify_password(password, user["salt"], user["password"])

    # ── Email verification ───────────────────────────────────

    async def _create_email_verification_key(
        self, user_id: str, email: str, enable_on_success: bool = False
    ) -> str:
        """Store a pending verification record for ``user_id``, replacing any previous one."""
        try:
            key = generate_key(VERIFICATION_KEY_LENGTH)
        except (OSError, NotImplementedError) as exc:
            raise UnexpectedError("Unable to create email verification key") from exc

        value = {"email": email, "key": key, "enable_on_success": enable_on_success}
        user_key = identity.encode(user_id)

        row = await self._verification_record(user_key)
        if row is None:
            row = UserMeta(id=EMAIL_VERIFICATION_META_ID, user_id=user_key, meta_value=json.dumps(value))
        else:
            row.meta_value = json.dumps(value)
            row.updated_at = utcnow()
        self.session.add(row)
        await self.session.commit()

        await self.record(
            ACTION_CREATE,
            "User meta created",
            {
                "action": "api.user.email.verification.create",
                "user_id": user_id,
                "meta_id": EMAIL_VERIFICATION_META_ID,
            },
            "api.user.email.verification.create",
            user_id,
            value,
        )
        return key

    async def _verification_record(self, user_key: bytes) -> UserMeta | None:
        stmt = select(UserMeta).where(
            UserMeta.id == EMAIL_VERIFICATION_META_ID,
            UserMeta.user_id == user_key,
        ).execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def verify_email_verification_key(self, user_id: str, key: str) -> bool:
        """Redeem a pending email verification.

        Returns False for a malformed user id, a missing record or a wrong
        key alike, so callers cannot tell which one it was.
        """
        user_key = try_encode(user_id)
        if user_key is None or not isinstance(key, str):
            return False

        row = await self._verification_record(user_key)
        if row is None:
            return False

        try:
            value = json.loads(row.meta_value)
        except ValueError:
            return False
        if not isinstance(value, dict) or "email" not in value:
            return False
        if not hmac.compare_digest(str(value.get("key", "")).encode(), key.encode()):
            return False

        await self.session.delete(row)
        await self.session.commit()

        self.audit.record(
            ACTION_DELETE,
            "User meta deleted",
            {
                "action": "api.user.email.verification.success",
                "user_id": user_id,
                "meta_id": EMAIL_VERIFICATION_META_ID,
            },
        )

        changes: dict[str, Any] = {"email": value["email"]}
        if value.get("enable_on_success") is True:
            changes["enabled"] = True

        await self.update(user_id, changes, check_email_verification=False)

        await self.events.emit("api.user.email.verification.success", user_id, value)
        return True

    # ── Create ───────────────────────────────────────────────

    async def create(self, attrs: dict[str, Any], include_verification: bool = False) -> str:
        """Create a user and return its id."""
        msg = "Unable to create user"
        attrs = dict(attrs)

        self.check_attrs(self.schema, attrs, msg)

        if self.meta_rules and not validate_meta(attrs.get("meta", {}), self.meta_rules):
            raise self.reject(BadRequest, msg, "Missing or invalid meta attribute(s)")

        try:
            salt = generate_key(SALT_LENGTH)
        except (OSError, NotImplementedError) as exc:
            raise self.reject(UnexpectedError, msg, "Error creating salt") from exc

        if not self.password_policy(attrs["password"]):
            raise self.reject(BadRequest, msg, "Password does not meet the minimum requirements")

        email = attrs["email"].lower()
        if await self.email_exists(email):
            raise self.reject(Conflict, msg, f"Email ({email}) already exists")

        user_id, key = identity.new_key()
        user = User(
            id=key,
            email=email,
            password=hash_password(attrs["password"], salt),
            salt=salt,
            meta=json.dumps(attrs["meta"]) if "meta" in attrs else None,
        )
        if "enabled" in attrs:
            user.enabled = bool(attrs["enabled"])

        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise self.reject(Conflict, msg, f"Email ({email}) already exists") from exc

        if include_verification:
            await self._create_email_verification_key(user_id, email, enable_on_success=True)

        resource = self.schema.redact(self.schema.only_allowed({**attrs, "email": email}))
        await self.record(
            ACTION_CREATE,
            "User created",
            {"action": "api.user.create", "user_id": user_id},
            "api.user.create",
            user_id,
            resource,
            resource=resource,
        )
        return user_id

    # ── Read ─────────────────────────────────────────────────

    async def get_collection(self, args: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            results = await query_collection(self.session, User, self.schema, args)
        except BadRequest as exc:
            raise self.reject(BadRequest, "Unable to get user collection", exc.message) from exc

        ids = [row["id"] for row in results["data"]]
        await self.record(
            ACTION_READ,
            "User read",
            {"action": "api.user.read", "user_id": ids},
            "api.user.read",
            ids,
        )
        return results

    async def get(self, user_id: str, cols: list[str] | None = None) -> dict[str, Any]:
        msg = "Unable to get user"
        if not await self.id_exists(user_id):
            raise self.reject(NotFound, msg, "User does not exist", user_id=user_id)

        try:
            result = await query_single(
                self.session, User, self.schema, cols, where=[User.id == identity.encode(user_id)]
            )
        except (BadRequest, NotFound) as exc:
            raise self.reject(type(exc), msg, exc.message, user_id=user_id) from exc

        await self.record(
            ACTION_READ,
            "User read",
            {"action": "api.user.read", "user_id": [result["id"]]},
            "api.user.read",
            [result["id"]],
        )
        return result

    def _entire(self, user: User) -> dict[str, Any]:
        return {
            "id": identity.decode(user.id),
            "email": user.email,
            "password": user.password,
            "salt": user.salt,
            "meta": json.loads(user.meta) if user.meta else None,
            "enabled": bool(user.enabled),
            "createdAt": user.created_at,
            "updatedAt": user.updated_at,
        }

    async def get_entire(self, user_id: str, skip_log: bool = False) -> dict[str, Any]:
        """Entire user row, including the password hash and salt.

        ``skip_log`` suppresses the read audit entry and event; used for
        internal reads such as authentication and load-before-update.
        """
        key = try_encode(user_id)
        user = (
            await self.session.get(User, key, populate_existing=True) if key is not None else None
        )
        if user is None:
            raise self.reject(NotFound, "Unable to get user", "User does not exist", user_id=user_id)

        result = self._entire(user)
        if not skip_log:
            await self.record(
                ACTION_READ,
                "User read",
                {"action": "api.user.read", "user_id": [result["id"]]},
                "api.user.read",
                [result["id"]],
            )
        return result

    async def get_entire_from_email(self, email: str, skip_log: bool = False) -> dict[str, Any]:
        stmt = (
            select(User)
            .where(User.email == email.lower())
            .execution_options(populate_existing=True)
        )
        user = (await self.session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise self.reject(NotFound, "Unable to get user", "User does not exist", email=email)

        result = self._entire(user)
        if not skip_log:
            await self.record(
                ACTION_READ,
                "User read",
                {"action": "api.user.read", "user_id": [result["id"]]},
                "api.user.read",
                [result["id"]],
            )
        return result

    # ── Update ───────────────────────────────────────────────

    async def update(
        self,
        user_id: str,
        attrs: dict[str, Any],
        check_email_verification: bool = True,
    ) -> None:
        """Partially update a user.

        With email verification enabled, a changed email is not written;
        a verification key is created instead and the email is applied
        when that key is redeemed.
        """
        if not attrs:
            return

        msg = "Unable to update user"
        attrs = dict(attrs)

        if not identity.is_valid(user_id):
            raise self.reject(NotFound, msg, "Invalid user ID", user_id=user_id)

        try:
            pre_update = await self.get_entire(user_id, skip_log=True)
        except NotFound as exc:
            raise self.reject(NotFound, msg, "Does not exist", user_id=user_id) from exc

        self.check_attrs(self.schema, attrs, msg, partial=True, user_id=user_id)

        values: dict[str, Any] = {}
        changes: dict[str, Any] = {}

        if "meta" in attrs:
            merged = {**(pre_update["meta"] or {}), **attrs["meta"]}
            if self.meta_rules and not validate_meta(merged, self.meta_rules):
                raise self.reject(
                    BadRequest, msg, "Missing or invalid meta attribute(s)", user_id=user_id
                )
            values["meta"] = json.dumps(merged)
            changes["meta"] = merged

        if "password" in attrs:
            if not self.password_policy(attrs["password"]):
                raise self.reject(
                    BadRequest,
                    msg,
                    "Password does not meet the minimum requirements",
                    user_id=user_id,
                )
            values["password"] = hash_password(attrs["password"], pre_update["salt"])
            changes["password"] = PASSWORD_UPDATED

        if "email" in attrs:
            email = attrs["email"].lower()
            if await self.email_exists(email, user_id):
                raise self.reject(Conflict, msg, f"Email ({email}) already exists", user_id=user_id)

            if (
                check_email_verification
                and self.settings.users_verify_email
                and pre_update["email"] != email
            ):
                await self._create_email_verification_key(user_id, email)
            else:
                values["email"] = email
                changes["email"] = email

        if "enabled" in attrs:
            values["enabled"] = bool(attrs["enabled"])
            changes["enabled"] = values["enabled"]

        if values:
            stmt = (
                update(User)
                .where(User.id == identity.encode(user_id))
                .values(**values, updated_at=utcnow())
            )
            try:
                await self.session.execute(stmt)
                await self.session.commit()
            except IntegrityError as exc:
                await self.session.rollback()
                raise self.reject(Conflict, msg, "Email already exists", user_id=user_id) from exc

        pre_image = self.schema.redact(self.schema.only_allowed(pre_update), PASSWORD_UNCHANGED)
        post_image = {**pre_image, **changes}
        cols_updated = list(changes)

        await self.record(
            ACTION_UPDATE,
            "User updated",
            {"action": "api.user.update", "user_id": user_id},
            "api.user.update",
            user_id,
            pre_image,
            post_image,
            cols_updated,
            resource=post_image,
        )

    # ── Delete ───────────────────────────────────────────────

    async def delete(self, user_id: str) -> None:
        msg = "Unable to delete user"
        if not await self.id_exists(user_id):
            raise self.reject(NotFound, msg, "User ID does not exist", user_id=user_id)

        owned = await self.get_owned_tenant_ids(user_id)
        if owned:
            raise self.reject(
                Conflict, msg, "User owns tenant(s)", user_id=user_id, tenant_id=owned
            )

        key = identity.encode(user_id)
        resource = await query_single(self.session, User, self.schema, where=[User.id == key])

        for table in (TenantGroupUser, TenantRoleUser, TenantUser, UserPermission, UserKey, UserMeta):
            await self.session.execute(delete(table).where(table.user_id == key))
        await self.session.execute(delete(User).where(User.id == key))
        await self.session.commit()

        await self.record(
            ACTION_DELETE,
            "User deleted",
            {"action": "api.user.delete", "user_id": user_id},
            "api.user.delete",
            user_id,
            resource,
            resource=resource,
        )
