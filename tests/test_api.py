"""HTTP-level tests: routing, credentials, permission gates and error bodies."""

import pytest
from httpx import AsyncClient

from tenancy.services.relationships import TenantUsersModel
from tenancy.services.tenants import TenantGroupsModel, TenantsModel

from conftest import PASSWORD


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "database": "ok"}


# ── Auth ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_login_and_use_token(client: AsyncClient, make_user):
    user_id = await make_user(email="me@example.com")

    resp = await client.post("/v1/auth/login", json={"email": "me@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    body = resp.json()
    assert body["user_id"] == user_id
    assert body["token_type"] == "bearer"

    headers = {"Authorization": f"Bearer {body['access_token']}"}
    resp = await client.get(f"/v1/users/{user_id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["email"] == "me@example.com"


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient, make_user):
    await make_user(email="me@example.com")
    resp = await client.post("/v1/auth/login", json={"email": "me@example.com", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["status"] == 401


@pytest.mark.asyncio
async def test_login_is_rate_limited(client: AsyncClient, settings):
    payload = {"email": "nobody@example.com", "password": "whatever1"}
    for _ in range(settings.rate_limit_auth):
        assert (await client.post("/v1/auth/login", json=payload)).status_code == 401

    resp = await client.post("/v1/auth/login", json=payload)
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == str(settings.rate_limit_window)


@pytest.mark.asyncio
async def test_missing_credentials(client: AsyncClient):
    resp = await client.get("/v1/users")
    assert resp.status_code == 401
    assert resp.json() == {"status": 401, "message": "Invalid credentials"}


@pytest.mark.asyncio
async def test_private_rate_limit(client: AsyncClient, make_user, token_headers, settings):
    user_id = await make_user()
    headers = token_headers(user_id, rate_limit=1)

    assert (await client.get(f"/v1/users/{user_id}", headers=headers)).status_code == 200
    resp = await client.get(f"/v1/users/{user_id}", headers=headers)
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == str(settings.rate_limit_window)


@pytest.mark.asyncio
async def test_request_validation_error_body(client: AsyncClient):
    resp = await client.post("/v1/auth/login", json={"email": "not-an-email"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["status"] == 400
    assert "password" in body["message"]


# ── Users ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_user_requires_permission(client: AsyncClient, make_user, token_headers):
    caller = await make_user()
    resp = await client.post(
        "/v1/users",
        json={"email": "new@example.com", "password": PASSWORD},
        headers=token_headers(caller),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_create_user(client: AsyncClient, make_user, token_headers):
    admin = await make_user(permissions=("users.create",))
    headers = token_headers(admin)

    resp = await client.post(
        "/v1/users", json={"email": "new@example.com", "password": PASSWORD}, headers=headers
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["links"]["self"] == f"/v1/users/{body['id']}"

    resp = await client.post(
        "/v1/users", json={"email": "NEW@example.com", "password": PASSWORD}, headers=headers
    )
    assert resp.status_code == 409
    assert resp.json()["status"] == 409


@pytest.mark.asyncio
async def test_create_user_bad_attribute(client: AsyncClient, make_user, token_headers):
    admin = await make_user(permissions=("users.create",))
    resp = await client.post(
        "/v1/users",
        json={"email": "new@example.com", "password": PASSWORD, "salt": "x"},
        headers=token_headers(admin),
    )
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("Unable to create user")


@pytest.mark.asyncio
async def test_absolute_links(client: AsyncClient, make_user, token_headers, settings):
    settings.response_absolute_uri = True
    settings.response_base_url = "https://api.example.com/"
    admin = await make_user(permissions=("users.create",))

    resp = await client.post(
        "/v1/users",
        json={"email": "new@example.com", "password": PASSWORD},
        headers=token_headers(admin),
    )
    body = resp.json()
    assert body["links"]["self"] == f"https://api.example.com/v1/users/{body['id']}"


@pytest.mark.asyncio
async def test_other_user_needs_read_permission(client: AsyncClient, make_user, token_headers):
    alice, bob = await make_user(), await make_user()
    assert (await client.get(f"/v1/users/{bob}", headers=token_headers(alice))).status_code == 403

    reader = await make_user(permissions=("users.read",))
    resp = await client.get(f"/v1/users/{bob}?fields=email", headers=token_headers(reader))
    assert resp.status_code == 200
    assert resp.json()["data"] == {"id": bob, "email": "user2@example.com"}


@pytest.mark.asyncio
async def test_user_collection(client: AsyncClient, make_user, token_headers):
    reader = await make_user(permissions=("users.read",))
    await make_user(email="zed@example.com")

    resp = await client.get(
        "/v1/users",
        params={"fields": "email", "sort": "-email", "filter": '{"email": {"sw": "zed"}}'},
        headers=token_headers(reader),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert [row["email"] for row in body["data"]] == ["zed@example.com"]
    assert body["meta"]["total"] == 1

    resp = await client.get("/v1/users", params={"filter": "{bad"}, headers=token_headers(reader))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_self_update_and_enable_gate(client: AsyncClient, make_user, token_headers, users):
    user_id = await make_user()
    headers = token_headers(user_id)

    resp = await client.patch(f"/v1/users/{user_id}", json={"meta": {"theme": "dark"}}, headers=headers)
    assert resp.status_code == 204
    assert (await users.get(user_id))["meta"] == {"theme": "dark"}

    resp = await client.patch(f"/v1/users/{user_id}", json={"enabled": False}, headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_delete_then_get(client: AsyncClient, make_user, token_headers):
    admin = await make_user(permissions=("users.read", "users.delete"))
    victim = await make_user()
    headers = token_headers(admin)

    assert (await client.delete(f"/v1/users/{victim}", headers=headers)).status_code == 204
    resp = await client.get(f"/v1/users/{victim}", headers=headers)
    assert resp.status_code == 404
    assert resp.json()["status"] == 404


@pytest.mark.asyncio
async def test_create_and_use_api_key(client: AsyncClient, make_user, token_headers):
    user_id = await make_user()

    resp = await client.post(
        f"/v1/users/{user_id}/keys",
        json={"name": "cli", "allowed_ips": ["127.0.0.0/8"]},
        headers=token_headers(user_id),
    )
    assert resp.status_code == 201
    raw = resp.json()["raw_key"]

    resp = await client.get(f"/v1/users/{user_id}", headers={"X-Api-Key": raw})
    assert resp.status_code == 200

    resp = await client.get(f"/v1/users/{user_id}", headers={"X-Api-Key": raw + "x"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_verify_email_failures_are_uniform(client: AsyncClient, make_user):
    user_id = await make_user()
    for body in ({"user_id": user_id, "key": "wrong"}, {"user_id": "junk", "key": "wrong"}):
        resp = await client.post("/v1/auth/verify-email", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"status": 400, "message": "Unable to verify email"}


# ── Tenants ──────────────────────────────────────────────────

@pytest.fixture
async def tenant(session, settings, events, make_user) -> dict:
    owner = await make_user()
    member = await make_user()
    tenant_id = await TenantsModel(session, settings, events).create({"owner": owner, "name": "Acme"})
    await TenantUsersModel(session, settings, events).add(tenant_id, [member])
    group_id = await TenantGroupsModel(session, settings, events).create(tenant_id, {"name": "Ops"})
    return {"id": tenant_id, "owner": owner, "member": member, "group": group_id}


@pytest.mark.asyncio
async def test_create_tenant_defaults_owner_to_caller(client: AsyncClient, make_user, token_headers):
    caller = await make_user(permissions=("tenants.create", "tenants.read"))
    headers = token_headers(caller)

    resp = await client.post("/v1/tenants", json={"name": "Mine"}, headers=headers)
    assert resp.status_code == 201
    tenant_id = resp.json()["id"]

    resp = await client.get(f"/v1/tenants/{tenant_id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["owner"] == caller


@pytest.mark.asyncio
async def test_group_users_over_http(client: AsyncClient, make_user, token_headers, tenant):
    manager = await make_user(permissions=("tenant.groups.users.update",))
    headers = token_headers(manager)
    url = f"/v1/tenants/{tenant['id']}/groups/{tenant['group']}/users"

    resp = await client.post(url, json={"ids": [tenant["member"]]}, headers=headers)
    assert resp.status_code == 204

    resp = await client.get(url, headers=headers)
    assert resp.status_code == 200
    assert [row["id"] for row in resp.json()["data"]] == [tenant["member"]]

    resp = await client.request("DELETE", url, json={"ids": [tenant["member"]]}, headers=headers)
    assert resp.status_code == 204
    assert (await client.get(url, headers=headers)).json()["data"] == []


@pytest.mark.asyncio
async def test_group_users_rejects_outsider(client: AsyncClient, make_user, token_headers, tenant):
    manager = await make_user(permissions=("tenant.groups.users.update",))
    outsider = await make_user()
    url = f"/v1/tenants/{tenant['id']}/groups/{tenant['group']}/users"

    resp = await client.post(url, json={"ids": [outsider]}, headers=token_headers(manager))
    assert resp.status_code == 400
    assert outsider in resp.json()["message"]


@pytest.mark.asyncio
async def test_group_users_without_permission(client: AsyncClient, make_user, token_headers, tenant):
    caller = await make_user()
    url = f"/v1/tenants/{tenant['id']}/groups/{tenant['group']}/users"
    assert (await client.get(url, headers=token_headers(caller))).status_code == 403
