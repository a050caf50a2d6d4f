"""Tests for email verification: issue, redeem once, anti-enumeration."""

import pytest

from tenancy.services.user_meta import UserMetaModel
from tenancy.services.users import UsersModel

from conftest import PASSWORD


def _verification_key(emitted) -> str:
    [(_, _user_id, value)] = [e for e in emitted if e[0] == "api.user.email.verification.create"]
    return value["key"]


@pytest.fixture
def verifying_users(session, settings, events) -> UsersModel:
    settings = settings.model_copy(update={"users_verify_email": True})
    return UsersModel(session, settings, events)


@pytest.mark.asyncio
async def test_create_with_verification_enables_on_success(users, emitted):
    user_id = await users.create(
        {"email": "a@b.com", "password": PASSWORD}, include_verification=True
    )
    assert not await users.is_enabled(user_id)
    key = _verification_key(emitted)

    assert await users.verify_email_verification_key(user_id, key) is True

    assert await users.is_enabled(user_id)
    assert ("api.user.email.verification.success", user_id) == next(
        e[:2] for e in emitted if e[0] == "api.user.email.verification.success"
    )


@pytest.mark.asyncio
async def test_wrong_key_returns_false_and_keeps_record(users, emitted):
    user_id = await users.create(
        {"email": "a@b.com", "password": PASSWORD}, include_verification=True
    )
    key = _verification_key(emitted)

    assert await users.verify_email_verification_key(user_id, "wrong") is False
    assert not await users.is_enabled(user_id)

    # The pending record survived the failed attempt
    assert await users.verify_email_verification_key(user_id, key) is True


@pytest.mark.asyncio
async def test_key_is_single_use(users, emitted):
    user_id = await users.create(
        {"email": "a@b.com", "password": PASSWORD}, include_verification=True
    )
    key = _verification_key(emitted)

    assert await users.verify_email_verification_key(user_id, key) is True
    assert await users.verify_email_verification_key(user_id, key) is False
    assert len([e for e in emitted if e[0] == "api.user.email.verification.success"]) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id", ["nope", "", "6ba7b810-9dad-11d1-80b4-00c04fd430c8"])
async def test_unknown_or_malformed_user_returns_false(users, user_id):
    assert await users.verify_email_verification_key(user_id, "whatever") is False


@pytest.mark.asyncio
async def test_email_change_is_deferred_until_verified(verifying_users, emitted):
    users = verifying_users
    user_id = await users.create({"email": "old@b.com", "password": PASSWORD, "enabled": True})

    await users.update(user_id, {"email": "New@b.com"})

    assert (await users.get(user_id))["email"] == "old@b.com"
    [(_, event_user, pre, post, cols)] = [e for e in emitted if e[0] == "api.user.update"]
    assert cols == []
    assert event_user == user_id
    assert pre["email"] == post["email"] == "old@b.com"

    key = _verification_key(emitted)
    assert await users.verify_email_verification_key(user_id, key) is True
    user = await users.get(user_id)
    assert user["email"] == "new@b.com"
    assert user["enabled"] is True


@pytest.mark.asyncio
async def test_same_email_is_not_diverted(verifying_users, emitted):
    user_id = await verifying_users.create({"email": "a@b.com", "password": PASSWORD})
    await verifying_users.update(user_id, {"email": "a@b.com"})
    assert not [e for e in emitted if e[0] == "api.user.email.verification.create"]


@pytest.mark.asyncio
async def test_verification_record_hidden_from_user_meta(users, session, settings, events):
    user_id = await users.create(
        {"email": "a@b.com", "password": PASSWORD}, include_verification=True
    )
    meta = UserMetaModel(session, settings, events)
    await meta.upsert(user_id, "theme", {"dark": True})

    collection = await meta.get_collection(user_id)
    assert [row["id"] for row in collection["data"]] == ["theme"]
    assert collection["data"][0]["metaValue"] == {"dark": True}
