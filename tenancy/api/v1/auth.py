"""Authentication endpoints: login and email verification."""

from fastapi import APIRouter, Request
from pydantic import BaseModel, EmailStr

from tenancy.api.deps import AppSettings, Events, Limiter, Session, client_ip
from tenancy.errors import BadRequest
from tenancy.services.auth import UNKNOWN, AuthModel
from tenancy.services.users import UsersModel

router = APIRouter(prefix="/auth", tags=["auth"])


# ── Schemas ──────────────────────────────────────────────────

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LoginResponse(BaseModel):
    user_id: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class VerifyEmailRequest(BaseModel):
    user_id: str
    key: str


# ── Routes ───────────────────────────────────────────────────

@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    session: Session,
    settings: AppSettings,
    events: Events,
    limiter: Limiter,
) -> LoginResponse:
    """Authenticate with email + password, receive a JWT."""
    await limiter.enforce(f"auth-{client_ip(request) or UNKNOWN}", settings.rate_limit_auth)
    result = await AuthModel(session, settings, events).authenticate(body.email, body.password)
    return LoginResponse(**result)


@router.post("/verify-email")
async def verify_email(
    body: VerifyEmailRequest,
    request: Request,
    session: Session,
    settings: AppSettings,
    events: Events,
    limiter: Limiter,
) -> dict:
    """Redeem an email verification key.

    Every failure gets the same response, whatever the reason.
    """
    await limiter.enforce(f"auth-{client_ip(request) or UNKNOWN}", settings.rate_limit_auth)
    users = UsersModel(session, settings, events)
    if not await users.verify_email_verification_key(body.user_id, body.key):
        raise BadRequest("Unable to verify email")
    return {"status": 200, "message": "Email verified"}
