"""Security utilities: hashing, key generation and token helpers."""

import hashlib
import re
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import jwt
from passlib.context import CryptContext

from tenancy.core.config import Settings

# ── Password hashing (Argon2) ─────────────────────────────────

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(password: str, salt: str) -> str:
    """Hash a password with the user's own salt mixed in.

    Argon2 adds its own random salt on top; the per-user salt ties the hash
    to the account so a hash copied to another row never verifies.
    """
    return pwd_context.hash(salt + password)


def verify_password(plain: str, salt: str, hashed: str) -> bool:
    return pwd_context.verify(salt + plain, hashed)


def generate_key(length: int) -> str:
    """Random hex string of exactly ``length`` characters."""
    return secrets.token_hex((length + 1) // 2)[:length]


# ── Password acceptability ────────────────────────────────────

PasswordPolicy = Callable[[str], bool]


def default_password_policy(min_length: int = 8) -> PasswordPolicy:
    """At least ``min_length`` characters with one letter and one digit."""

    def _policy(password: str) -> bool:
        return (
            len(password) >= min_length
            and re.search(r"[A-Za-z]", password) is not None
            and re.search(r"\d", password) is not None
        )

    return _policy


# ── API key hashing (SHA-256, deterministic for lookups) ─────

API_KEY_PREFIX_LENGTH = 8


def hash_api_key(raw_key: str) -> str:
    """Deterministic SHA-256 digest of a raw key, used as its lookup column."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key() -> str:
    """Generate a cryptographically secure 256-bit API key."""
    return secrets.token_urlsafe(32)


# ── JWT ───────────────────────────────────────────────────────

TOKEN_TYPE_ACCESS = "access"


def create_jwt(
    settings: Settings,
    subject: str,
    rate_limit: int | None = None,
    expires_delta: timedelta | None = None,
    token_type: str = TOKEN_TYPE_ACCESS,
) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": subject,
        "aud": settings.jwt_audience,
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": expire,
        "typ": token_type,
    }
    if rate_limit is not None:
        payload["rl"] = rate_limit
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(settings: Settings, token: str) -> dict:
    """Decode and verify a JWT.

    Raises jose.ExpiredSignatureError, jose.JWTClaimsError (audience or
    issuer mismatch) or jose.JWTError on failure.
    """
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )
