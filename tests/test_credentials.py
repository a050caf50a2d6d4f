"""Tests for credential validation: tokens, API keys and admission control."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from tenancy.core.config import AUTH_KEY, AUTH_TOKEN
from tenancy.core.security import create_jwt
from tenancy.errors import BadRequest, Forbidden, RateLimitExceeded, Unauthorized
from tenancy.models.user_key import UserKeyCreate
from tenancy.services.auth import AuthModel, CredentialValidator, ip_allowed, referer_allowed

from conftest import PASSWORD


@pytest.fixture
def auth(session, settings, events) -> AuthModel:
    return AuthModel(session, settings, events)


@pytest.fixture
def validator(auth, limiter, settings, events) -> CredentialValidator:
    return CredentialValidator(auth, limiter, settings, events)


def _bearer(settings, user_id, **kwargs) -> str:
    return f"Bearer {create_jwt(settings, user_id, **kwargs)}"


# ── No credential ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_no_credential_is_unauthorized(validator):
    with pytest.raises(Unauthorized):
        await validator.validate(None, None, None, "10.0.0.1")


@pytest.mark.asyncio
async def test_no_credential_attempts_are_rate_limited(validator, settings):
    for _ in range(settings.rate_limit_auth):
        with pytest.raises(Unauthorized):
            await validator.validate(None, None, None, "10.0.0.1")

    with pytest.raises(RateLimitExceeded):
        await validator.validate(None, None, None, "10.0.0.1")

    # Another address has its own budget
    with pytest.raises(Unauthorized):
        await validator.validate(None, None, None, "10.0.0.2")


@pytest.mark.asyncio
async def test_disabled_method_counts_as_no_credential(session, settings, events, limiter, make_user):
    settings = settings.model_copy(update={"auth_methods": [AUTH_KEY]})
    validator = CredentialValidator(AuthModel(session, settings, events), limiter, settings, events)
    user_id = await make_user()

    with pytest.raises(Unauthorized):
        await validator.validate(_bearer(settings, user_id), None, None, "10.0.0.1")


# ── Tokens ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_valid_token(validator, settings, make_user, emitted):
    user_id = await make_user()

    result = await validator.validate(_bearer(settings, user_id), None)

    assert result.user_id == user_id
    assert result.method == AUTH_TOKEN
    assert result.rate_limit == settings.rate_limit_private
    assert ("api.auth", user_id) in emitted


@pytest.mark.asyncio
async def test_token_rate_limit_claim_is_enforced(validator, settings, make_user):
    user_id = await make_user()
    header = _bearer(settings, user_id, rate_limit=1)

    assert (await validator.validate(header, None)).rate_limit == 1
    with pytest.raises(RateLimitExceeded):
        await validator.validate(header, None)


@pytest.mark.asyncio
@pytest.mark.parametrize("header", ["Bearer", "Bearer not.a.jwt", "Basic abc", "token"])
async def test_malformed_token_unauthorized(validator, header):
    with pytest.raises(Unauthorized):
        await validator.validate(header, None)


@pytest.mark.asyncio
async def test_bad_signature_unauthorized(validator, settings, make_user):
    user_id = await make_user()
    other = settings.model_copy(update={"jwt_secret_key": "some-other-secret"})
    with pytest.raises(Unauthorized):
        await validator.validate(_bearer(other, user_id), None)


@pytest.mark.asyncio
async def test_expired_token_unauthorized(validator, settings, make_user):
    user_id = await make_user()
    header = _bearer(settings, user_id, expires_delta=timedelta(seconds=-5))
    with pytest.raises(Unauthorized):
        await validator.validate(header, None)


@pytest.mark.asyncio
async def test_wrong_audience_forbidden(validator, settings, make_user):
    user_id = await make_user()
    other = settings.model_copy(update={"jwt_audience": "another-api"})
    with pytest.raises(Forbidden):
        await validator.validate(_bearer(other, user_id), None)


@pytest.mark.asyncio
async def test_non_access_token_forbidden(validator, settings, make_user):
    user_id = await make_user()
    with pytest.raises(Forbidden):
        await validator.validate(_bearer(settings, user_id, token_type="refresh"), None)


@pytest.mark.asyncio
async def test_token_for_unknown_user_unauthorized(validator, settings):
    with pytest.raises(Unauthorized):
        await validator.validate(_bearer(settings, "6ba7b810-9dad-11d1-80b4-00c04fd430c8"), None)


@pytest.mark.asyncio
async def test_token_without_subject_unauthorized(validator, settings):
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {
            "aud": settings.jwt_audience,
            "iss": settings.jwt_issuer,
            "iat": now,
            "exp": now + timedelta(minutes=5),
            "typ": "access",
        },
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
    with pytest.raises(Unauthorized):
        await validator.validate(f"Bearer {token}", None)


@pytest.mark.asyncio
async def test_disabled_user_forbidden(validator, settings, make_user):
    user_id = await make_user(enabled=False)
    with pytest.raises(Forbidden):
        await validator.validate(_bearer(settings, user_id), None)


# ── Login ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_authenticate_issues_usable_token(auth, validator, make_user):
    user_id = await make_user(email="login@example.com")

    result = await auth.authenticate("LOGIN@example.com", PASSWORD)

    assert result["user_id"] == user_id
    assert (await validator.validate(f"Bearer {result['access_token']}", None)).user_id == user_id


@pytest.mark.asyncio
async def test_authenticate_failures(auth, make_user):
    await make_user(email="login@example.com")
    await make_user(email="off@example.com", enabled=False)

    with pytest.raises(Unauthorized):
        await auth.authenticate("login@example.com", "wrongPW1!")
    with pytest.raises(Unauthorized):
        await auth.authenticate("nobody@example.com", PASSWORD)
    with pytest.raises(Forbidden):
        await auth.authenticate("off@example.com", PASSWORD)


# ── API keys ─────────────────────────────────────────────────

async def _key(auth, user_id, **kwargs) -> str:
    created = await auth.create_key(user_id, UserKeyCreate(name="widget", **kwargs))
    return created.raw_key


@pytest.mark.asyncio
async def test_valid_key(validator, auth, make_user, emitted):
    user_id = await make_user()
    raw = await _key(auth, user_id, rate_limit=50)

    result = await validator.validate(None, raw, None, "10.0.0.1")

    assert result.user_id == user_id
    assert result.method == AUTH_KEY
    assert result.rate_limit == 50
    assert ("api.auth", user_id) in emitted


@pytest.mark.asyncio
async def test_token_wins_over_key(validator, auth, settings, make_user):
    token_user, key_user = await make_user(), await make_user()
    raw = await _key(auth, key_user)
    result = await validator.validate(_bearer(settings, token_user), raw)
    assert result.user_id == token_user


@pytest.mark.asyncio
async def test_unknown_key_unauthorized(validator):
    with pytest.raises(Unauthorized):
        await validator.validate(None, "definitely-not-a-key", None, "10.0.0.1")


@pytest.mark.asyncio
async def test_key_referer_binding(validator, auth, make_user):
    user_id = await make_user()
    raw = await _key(auth, user_id, allowed_domains=["example.com"])

    assert await validator.validate(None, raw, "https://shop.example.com/cart", "10.0.0.1")
    with pytest.raises(Forbidden):
        await validator.validate(None, raw, "https://evil.test/", "10.0.0.1")
    # A missing referer is not a free pass
    with pytest.raises(Forbidden):
        await validator.validate(None, raw, None, "10.0.0.1")


@pytest.mark.asyncio
async def test_key_ip_binding(validator, auth, make_user):
    user_id = await make_user()
    raw = await _key(auth, user_id, allowed_ips=["192.168.1.0/24", "10.0.0.7"])

    assert await validator.validate(None, raw, None, "192.168.1.44")
    assert await validator.validate(None, raw, None, "10.0.0.7")
    with pytest.raises(Forbidden):
        await validator.validate(None, raw, None, "10.0.0.8")
    with pytest.raises(Forbidden):
        await validator.validate(None, raw, None, None)


@pytest.mark.asyncio
async def test_expired_key_forbidden(validator, auth, make_user):
    user_id = await make_user()
    raw = await _key(auth, user_id, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    with pytest.raises(Forbidden):
        await validator.validate(None, raw, None, "10.0.0.1")


@pytest.mark.asyncio
async def test_key_for_disabled_user_forbidden(validator, auth, users, make_user):
    user_id = await make_user()
    raw = await _key(auth, user_id)
    await users.update(user_id, {"enabled": False})
    with pytest.raises(Forbidden):
        await validator.validate(None, raw, None, "10.0.0.1")


@pytest.mark.asyncio
async def test_create_key_rejects_bad_ip(auth, make_user):
    user_id = await make_user()
    with pytest.raises(BadRequest):
        await _key(auth, user_id, allowed_ips=["not-an-ip"])


@pytest.mark.asyncio
async def test_create_key_event_has_no_raw_key(auth, make_user, emitted):
    user_id = await make_user()
    raw = await _key(auth, user_id)
    [event] = [e for e in emitted if e[0] == "api.user.key.create"]
    assert raw not in repr(event)


def test_binding_helpers():
    assert referer_allowed([], "UNKNOWN")
    assert not referer_allowed(["example.com"], "UNKNOWN")
    assert not referer_allowed(["example.com"], "https://notexample.com")
    assert ip_allowed([], "UNKNOWN")
    assert not ip_allowed(["::1"], "UNKNOWN")
    assert ip_allowed(["2001:db8::/32"], "2001:db8::1")
