"""Credential issue and validation: access tokens (JWT) and user API keys.

A credential is rejected with Unauthorized when it is absent, malformed or
unknown, and with Forbidden when it is genuine but not usable here (wrong
audience, expired key, referer or IP outside the key's bindings, disabled
user).
"""

import ipaddress
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core import identity
from tenancy.core.audit import AuditLog
from tenancy.core.config import ACTION_CREATE, AUTH_KEY, AUTH_TOKEN, Settings
from tenancy.core.events import EventDispatcher
from tenancy.core.logging import notice
from tenancy.core.rate_limit import RateLimiter
from tenancy.core.security import (
    API_KEY_PREFIX_LENGTH,
    TOKEN_TYPE_ACCESS,
    create_jwt,
    decode_jwt,
    generate_api_key,
    hash_api_key,
)
from tenancy.errors import BadRequest, Forbidden, NotFound, Unauthorized
from tenancy.models.base import utcnow
from tenancy.models.user_key import UserKey, UserKeyCreate, UserKeyCreated
from tenancy.services.base import ApiModel, try_encode
from tenancy.services.users import UsersModel

logger = logging.getLogger(__name__)

# Stand-in for a missing Referer header or client address
UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class AuthResult:
    user_id: str
    rate_limit: int
    method: str


class AuthModel(ApiModel):
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        events: EventDispatcher,
        audit: AuditLog | None = None,
        users: UsersModel | None = None,
    ) -> None:
        super().__init__(session, settings, events, audit)
        self.users = users or UsersModel(session, settings, events, self.audit)

    # ── Issue ────────────────────────────────────────────────

    def create_token(self, user_id: str, rate_limit: int | None = None) -> str:
        return create_jwt(self.settings, user_id, rate_limit=rate_limit)

    async def authenticate(self, email: str, password: str) -> dict[str, Any]:
        """Exchange email + password for an access token."""
        msg = "Unable to authenticate"
        try:
            user = await self.users.get_entire_from_email(email, skip_log=True)
        except NotFound as exc:
            raise self.reject(Unauthorized, msg, "Invalid email or password", email=email) from exc

        if not await self.users.verify_password(user, password):
            raise self.reject(Unauthorized, msg, "Invalid email or password", email=email)
        if not user["enabled"]:
            raise self.reject(Forbidden, msg, "User is disabled", user_id=user["id"])

        await self.events.emit("api.auth.login", user["id"])
        return {
            "user_id": user["id"],
            "access_token": self.create_token(user["id"]),
            "expires_in": self.settings.jwt_expire_minutes * 60,
        }

    async def create_key(self, user_id: str, body: UserKeyCreate) -> UserKeyCreated:
        """Create an API key for a user. The raw key is only ever returned here."""
        msg = "Unable to create user key"
        user_key = try_encode(user_id)
        if user_key is None or not await self.users.id_exists(user_id):
            raise self.reject(NotFound, msg, "User does not exist", user_id=user_id)

        for entry in body.allowed_ips:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as exc:
                raise self.reject(
                    BadRequest, msg, f"Invalid IP address or range ({entry})", user_id=user_id
                ) from exc

        raw_key = generate_api_key()
        key_id, key = identity.new_key()
        self.session.add(
            UserKey(
                id=key,
                user_id=user_key,
                name=body.name,
                key_hash=hash_api_key(raw_key),
                key_prefix=raw_key[:API_KEY_PREFIX_LENGTH],
                allowed_domains=json.dumps([d.lower() for d in body.allowed_domains]),
                allowed_ips=json.dumps(body.allowed_ips),
                rate_limit=body.rate_limit,
                expires_at=_naive_utc(body.expires_at),
            )
        )
        await self.session.commit()

        resource = body.model_dump(mode="json")
        await self.record(
            ACTION_CREATE,
            "User key created",
            {"action": "api.user.key.create", "user_id": user_id, "key_id": key_id},
            "api.user.key.create",
            user_id,
            key_id,
            resource,
            resource=resource,
        )
        return UserKeyCreated(
            id=key_id,
            name=body.name,
            key_prefix=raw_key[:API_KEY_PREFIX_LENGTH],
            raw_key=raw_key,
        )

    # ── Validate ─────────────────────────────────────────────

    async def _require_enabled(self, user_id: str) -> None:
        if not await self.users.id_exists(user_id):
            notice(logger, "Invalid credentials", reason="User does not exist", user_id=user_id)
            raise Unauthorized("Invalid credentials")
        if not await self.users.is_enabled(user_id):
            notice(logger, "Invalid credentials", reason="User is disabled", user_id=user_id)
            raise Forbidden("User is disabled")

    async def validate_token(self, authorization: str) -> AuthResult:
        """Validate an ``Authorization: Bearer <jwt>`` header value."""
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthorized("Invalid credentials")

        try:
            claims = decode_jwt(self.settings, token.strip())
        except ExpiredSignatureError as exc:
            raise Unauthorized("Access token has expired") from exc
        except JWTClaimsError as exc:
            notice(logger, "Access token rejected", reason=str(exc))
            raise Forbidden("Access token is not valid for this service") from exc
        except JWTError as exc:
            raise Unauthorized("Invalid credentials") from exc

        if claims.get("typ") != TOKEN_TYPE_ACCESS:
            raise Forbidden("Token is not an access token")

        user_id = claims.get("sub")
        if not identity.is_valid(user_id):
            raise Unauthorized("Invalid credentials")

        await self._require_enabled(user_id)

        rate_limit = claims.get("rl")
        if not isinstance(rate_limit, int):
            rate_limit = self.settings.rate_limit_private
        return AuthResult(user_id=user_id.lower(), rate_limit=rate_limit, method=AUTH_TOKEN)

    async def validate_key(self, raw_key: str, referer: str, ip: str) -> AuthResult:
        """Validate an API key against its expiry, referer and IP bindings."""
        stmt = select(UserKey).where(UserKey.key_hash == hash_api_key(raw_key))
        key = (await self.session.execute(stmt)).scalar_one_or_none()
        if key is None:
            raise Unauthorized("Invalid credentials")

        key_id, user_id = identity.decode(key.id), identity.decode(key.user_id)
        if key.expires_at is not None and key.expires_at <= utcnow():
            notice(logger, "User key rejected", reason="Expired", key_id=key_id)
            raise Forbidden("User key has expired")
        if not referer_allowed(json.loads(key.allowed_domains), referer):
            notice(logger, "User key rejected", reason="Referer", key_id=key_id, referer=referer)
            raise Forbidden("User key is not valid for this referer")
        if not ip_allowed(json.loads(key.allowed_ips), ip):
            notice(logger, "User key rejected", reason="IP", key_id=key_id, ip=ip)
            raise Forbidden("User key is not valid for this IP address")

        await self._require_enabled(user_id)

        key.last_used_at = utcnow()
        self.session.add(key)
        await self.session.commit()

        rate_limit = key.rate_limit if key.rate_limit is not None else self.settings.rate_limit_private
        return AuthResult(user_id=user_id, rate_limit=rate_limit, method=AUTH_KEY)


def referer_allowed(domains: list[str], referer: str) -> bool:
    """True if ``referer``'s host is one of ``domains`` or a subdomain of one.

    An empty domain list leaves the key unrestricted.
    """
    if not domains:
        return True
    if referer == UNKNOWN:
        return False
    host = (urlparse(referer).hostname or referer).lower()
    return any(host == d or host.endswith("." + d) for d in domains)


def ip_allowed(networks: list[str], ip: str) -> bool:
    """True if ``ip`` is inside one of ``networks`` (addresses or CIDR blocks)."""
    if not networks:
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(address in ipaddress.ip_network(n, strict=False) for n in networks)


class CredentialValidator:
    """Resolve a request's credential to a user and admit it through the rate limiter."""

    def __init__(
        self,
        auth: AuthModel,
        limiter: RateLimiter,
        settings: Settings,
        events: EventDispatcher,
    ) -> None:
        self.auth = auth
        self.limiter = limiter
        self.settings = settings
        self.events = events

    async def validate(
        self,
        authorization: str | None,
        api_key: str | None,
        referer: str | None = None,
        ip: str | None = None,
    ) -> AuthResult:
        ip = ip or UNKNOWN
        methods = self.settings.auth_methods

        if authorization and AUTH_TOKEN in methods:
            result = await self.auth.validate_token(authorization)
        elif api_key and AUTH_KEY in methods:
            result = await self.auth.validate_key(api_key, referer or UNKNOWN, ip)
        else:
            await self.limiter.enforce(f"auth-{ip}", self.settings.rate_limit_auth)
            notice(logger, "Invalid credentials", reason="No credential presented", ip=ip)
            raise Unauthorized("Invalid credentials")

        await self.events.emit("api.auth", result.user_id)
        await self.limiter.enforce(f"private-{result.user_id}", result.rate_limit)
        return result


def _naive_utc(value: datetime | None) -> datetime | None:
    # Stored timestamps are naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
