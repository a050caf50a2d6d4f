"""V1 API router aggregation."""

from fastapi import APIRouter

from tenancy.api.v1.auth import router as auth_router
from tenancy.api.v1.tenants import router as tenants_router
from tenancy.api.v1.users import router as users_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(auth_router)
v1_router.include_router(users_router)
v1_router.include_router(tenants_router)
