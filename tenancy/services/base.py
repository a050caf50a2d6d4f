"""Shared plumbing for resource and relationship models."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core import identity
from tenancy.core.audit import AuditLog
from tenancy.core.config import Settings
from tenancy.core.events import EventDispatcher
from tenancy.core.logging import notice
from tenancy.errors import ApiError, BadRequest, InvalidIdentityKey, UnexpectedError
from tenancy.services.schema import ResourceSchema

logger = logging.getLogger(__name__)


class ApiModel:
    """Base for every model: storage session, settings, audit log, events."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        events: EventDispatcher,
        audit: AuditLog | None = None,
    ) -> None:
        self.session = session
        self.settings = settings
        self.events = events
        self.audit = audit or AuditLog(settings)

    def reject(
        self,
        error: type[ApiError],
        message: str,
        reason: str,
        **context: Any,
    ) -> ApiError:
        """Log a rejected operation at NOTICE and build the error to raise."""
        notice(logger, message, reason=reason, **context)
        return error(f"{message}: {reason}")

    def check_attrs(
        self,
        schema: ResourceSchema,
        attrs: dict[str, Any],
        message: str,
        *,
        partial: bool = False,
        **context: Any,
    ) -> None:
        """Required, allowed and rule checks shared by create and update."""
        if not partial and schema.missing(attrs):
            raise self.reject(BadRequest, message, "Missing required attribute(s)", **context)
        if schema.disallowed(attrs):
            raise self.reject(BadRequest, message, "Invalid attribute(s)", **context)
        if schema.invalid(attrs):
            raise self.reject(BadRequest, message, "Invalid attribute type(s)", **context)

    async def record(
        self,
        action_type: str,
        message: str,
        context: dict[str, Any],
        event: str,
        *payload: Any,
        resource: Any = None,
    ) -> None:
        """Audit (when enabled for ``action_type``) then emit ``event``."""
        self.audit.record(action_type, message, context, resource=resource)
        await self.events.emit(event, *payload)


def try_encode(external: Any) -> bytes | None:
    """Storage key for ``external``, or None if it is not a valid identity key."""
    try:
        return identity.encode(external)
    except InvalidIdentityKey:
        return None


async def insert_ignore(session: AsyncSession, table, values: dict[str, Any]) -> None:
    """Insert a row, doing nothing if its primary key already exists."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing()
    else:
        stmt = insert(table).values(**values).prefix_with("IGNORE")
    await session.execute(stmt)


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit the work done inside the block, or roll all of it back.

    Storage faults (including a failed commit) surface as UnexpectedError;
    any other exception is re-raised unchanged after the rollback.
    """
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Transaction rolled back")
        raise UnexpectedError("Unable to complete transaction") from exc
    except BaseException:
        await session.rollback()
        raise
