"""Shared test fixtures: async SQLite in-memory DB, models and test client."""

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

# Import all models so metadata is populated
import tenancy.models  # noqa: F401
from tenancy.api.deps import get_events, get_rate_limiter
from tenancy.core.config import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_READ,
    ACTION_UPDATE,
    Settings,
    get_settings,
)
from tenancy.core.database import get_session
from tenancy.core.events import WILDCARD, EventDispatcher
from tenancy.core.rate_limit import MemoryCounterStore, RateLimiter
from tenancy.core.security import create_jwt
from tenancy.main import app
from tenancy.models.permission import Permission
from tenancy.services.permissions import PermissionsModel
from tenancy.services.users import UsersModel

PASSWORD = "validPW1!"


@pytest.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        jwt_secret_key="test-secret-key",
        rate_limit_backend="memory",
        audit_actions=[ACTION_CREATE, ACTION_READ, ACTION_UPDATE, ACTION_DELETE],
    )


@pytest.fixture
def emitted() -> list[tuple]:
    """Every event emitted during the test, as ``(name, *payload)`` tuples."""
    return []


@pytest.fixture
def events(emitted) -> EventDispatcher:
    dispatcher = EventDispatcher()
    dispatcher.subscribe(WILDCARD, lambda *args: emitted.append(args))
    return dispatcher


@pytest.fixture
def limiter(settings) -> RateLimiter:
    return RateLimiter(MemoryCounterStore(), window_seconds=settings.rate_limit_window)


@pytest.fixture
def users(session, settings, events) -> UsersModel:
    return UsersModel(session, settings, events)


@pytest.fixture
def make_user(session, settings, events):
    """Factory: create an enabled user, optionally holding global permissions."""
    counter = {"n": 0}

    async def _make(email: str | None = None, permissions: tuple[str, ...] = (), **attrs) -> str:
        counter["n"] += 1
        attrs.setdefault("enabled", True)
        user_id = await UsersModel(session, settings, EventDispatcher()).create(
            {"email": email or f"user{counter['n']}@example.com", "password": PASSWORD, **attrs}
        )
        if permissions:
            await grant(session, settings, user_id, permissions)
        return user_id

    return _make


async def grant(session, settings, user_id: str, names) -> None:
    """Create any missing permissions, then grant them globally."""
    model = PermissionsModel(session, settings, EventDispatcher())
    existing = set((await session.execute(select(Permission.name))).scalars())
    for name in names:
        if name not in existing:
            await model.create({"name": name})
    await model.grant_global(user_id, list(names))


@pytest.fixture
def grant_permissions(session, settings):
    async def _grant(user_id: str, *names: str) -> None:
        await grant(session, settings, user_id, names)

    return _grant


@pytest.fixture
def token_headers(settings):
    def _headers(user_id: str, **kwargs) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_jwt(settings, user_id, **kwargs)}"}

    return _headers


@pytest.fixture
async def client(session, settings, events, limiter) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with session, settings, events and limiter overrides."""

    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_events] = lambda: events
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
