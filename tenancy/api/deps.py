"""FastAPI dependencies: session, settings, credentials and permission gates."""

import json
import logging
from collections.abc import Callable
from typing import Annotated, Any, cast

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.config import Settings, get_settings
from tenancy.core.database import get_session
from tenancy.core.events import EventDispatcher
from tenancy.core.logging import notice
from tenancy.core.rate_limit import RateLimiter
from tenancy.errors import BadRequest, Forbidden
from tenancy.services.auth import AuthModel, AuthResult, CredentialValidator
from tenancy.services.permissions import PermissionEvaluator

logger = logging.getLogger(__name__)


async def get_events(request: Request) -> EventDispatcher:
    """Event dispatcher created with the application."""
    return cast(EventDispatcher, request.app.state.events)


async def get_rate_limiter(request: Request) -> RateLimiter:
    """Rate limiter created with the application."""
    return cast(RateLimiter, request.app.state.rate_limiter)


Session = Annotated[AsyncSession, Depends(get_session)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Events = Annotated[EventDispatcher, Depends(get_events)]
Limiter = Annotated[RateLimiter, Depends(get_rate_limiter)]


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def get_auth_context(
    request: Request,
    session: Session,
    settings: AppSettings,
    events: Events,
    limiter: Limiter,
    authorization: Annotated[str | None, Header()] = None,
    x_api_key: Annotated[str | None, Header()] = None,
    referer: Annotated[str | None, Header()] = None,
) -> AuthResult:
    """Authenticate the request or raise 401 / 403 / 429."""
    validator = CredentialValidator(
        AuthModel(session, settings, events), limiter, settings, events
    )
    return await validator.validate(authorization, x_api_key, referer, client_ip(request))


Auth = Annotated[AuthResult, Depends(get_auth_context)]


async def get_permission_evaluator(session: Session) -> PermissionEvaluator:
    return PermissionEvaluator(session)


Evaluator = Annotated[PermissionEvaluator, Depends(get_permission_evaluator)]


def _gate(mode: str, permissions: tuple[str, ...]) -> Callable[..., Any]:
    async def _check(request: Request, auth: Auth, evaluator: Evaluator) -> AuthResult:
        tenant_id = request.path_params.get("tenant_id", "")
        check = evaluator.has_all if mode == "all" else evaluator.has_any
        if not await check(auth.user_id, permissions, tenant_id):
            notice(
                logger,
                "Permission denied",
                user_id=auth.user_id,
                tenant_id=tenant_id,
                required=list(permissions),
            )
            raise Forbidden("Insufficient permissions")
        return auth

    return _check


def require_all(*permissions: str) -> Callable[..., Any]:
    """Dependency factory: the caller must hold every permission.

    Tenant-scoped grants count when the route has a ``tenant_id`` path
    parameter. Usage::

        async def endpoint(auth: AuthResult = Depends(require_all("users.read"))): ...
    """
    return _gate("all", permissions)


def require_any(*permissions: str) -> Callable[..., Any]:
    """Dependency factory: the caller must hold at least one permission."""
    return _gate("any", permissions)


def model_factory(model_cls: type) -> Callable[..., Any]:
    """Dependency building ``model_cls`` over the request's session."""

    def _build(session: Session, settings: AppSettings, events: Events):
        return model_cls(session, settings, events)

    return _build


def resource_link(request: Request, settings: Settings, path: str) -> str:
    """Link to ``path``, absolute when ``response_absolute_uri`` is set.

    ``response_base_url`` wins over the request's own base URL.
    """
    if not settings.response_absolute_uri:
        return path
    base = settings.response_base_url or str(request.base_url)
    return base.rstrip("/") + path


async def collection_args(
    fields: str | None = None,
    filter: str | None = None,
    sort: str | None = None,
    limit: int | None = None,
    page: int | None = None,
) -> dict[str, Any]:
    """Collection query args from ``?fields=a,b&filter={json}&sort=-a&limit=&page=``."""
    args: dict[str, Any] = {"limit": limit, "page": page}
    if fields:
        args["select"] = [f.strip() for f in fields.split(",") if f.strip()]
    if sort:
        args["sort"] = [s.strip() for s in sort.split(",") if s.strip()]
    if filter:
        try:
            args["filter"] = json.loads(filter)
        except ValueError as exc:
            raise BadRequest("Invalid filter: not valid JSON") from exc
        if not isinstance(args["filter"], dict):
            raise BadRequest("Invalid filter: expected an object")
    return args


CollectionArgs = Annotated[dict[str, Any], Depends(collection_args)]
