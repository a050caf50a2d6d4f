"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tenancy.api.deps import Session
from tenancy.api.v1 import v1_router
from tenancy.core.config import Settings, get_settings
from tenancy.core.database import init_db
from tenancy.core.events import EventDispatcher
from tenancy.core.logging import configure_logging
from tenancy.core.rate_limit import MemoryCounterStore, RateLimiter, RedisCounterStore
from tenancy.errors import ApiError, RateLimitExceeded

logger = logging.getLogger(__name__)


def build_rate_limiter(settings: Settings, redis: Redis | None = None) -> RateLimiter:
    """Redis-backed limiter when configured, otherwise per-process counters."""
    if settings.rate_limit_backend == "redis":
        store = RedisCounterStore(redis or Redis.from_url(settings.redis_url))
    else:
        store = MemoryCounterStore()
    return RateLimiter(store, window_seconds=settings.rate_limit_window)


_settings = get_settings()
_redis = Redis.from_url(_settings.redis_url) if _settings.rate_limit_backend == "redis" else None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging(_settings.log_level)
    # Startup: ensure tables exist (use Alembic in production)
    await init_db()
    logger.info("Application started")
    yield
    if _redis is not None:
        await _redis.aclose()


app = FastAPI(
    title="Tenancy",
    version="0.1.0",
    description="Multi-tenant users, tenants and permissions API",
    lifespan=lifespan,
)

app.state.events = EventDispatcher()
app.state.rate_limiter = build_rate_limiter(_settings, _redis)

# ── CORS ─────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Errors ───────────────────────────────────────────────────

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Every domain error becomes ``{"status": <code>, "message": <text>}``."""
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc.message, exc_info=exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": exc.status_code, "message": exc.message},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()})
    return JSONResponse(
        status_code=400,
        content={"status": 400, "message": f"Invalid request: {', '.join(fields)}"},
    )


# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check(session: Session) -> JSONResponse:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check failed: %s", type(exc).__name__)
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "error"})
    return JSONResponse(content={"status": "ok", "database": "ok"})
