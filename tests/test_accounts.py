"""Sessions, API keys and agents end to end against MongoDB (skipped when none is reachable)."""

import pytest

from app.core.security import create_session_token
from app.models.user import User
from app.services import api_keys as api_keys_service
from app.services import credits as credits_service
from app.services.credits import CreditOwner


def session(email: str = "maker@example.com", version: int = 0) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token({'email': email, 'session_version': version})}"}


@pytest.fixture(autouse=True)
def no_rate_limit(monkeypatch):
    async def allow(key):
        return None

    monkeypatch.setattr(api_keys_service, "enforce_rate_limit", allow)


async def fund(email: str, credits: float) -> User:
    user = await User.find_one(User.email == email)
    await credits_service.grant(CreditOwner.for_user(user), credits, "purchase", f"fund_{email}_{credits}")
    return user


async def test_me_creates_user_with_signup_bonus(client, db):
    r = await client.get("/v1/auth/me", headers=session())
    assert r.status_code == 200
    body = r.json()
    assert body["email"] == "maker@example.com"
    assert body["credits"] == 2.0
    # second request reuses the account and does not grant again
    r = await client.get("/v1/auth/me", headers=session())
    assert r.json()["id"] == body["id"]
    assert r.json()["credits"] == 2.0


async def test_logout_invalidates_tokens(client, db):
    headers = session()
    assert (await client.post("/v1/auth/logout", headers=headers)).json() == {"ok": True}
    r = await client.get("/v1/auth/me", headers=headers)
    assert r.status_code == 401
    assert (await client.get("/v1/auth/me", headers=session(version=1))).status_code == 200


async def test_api_key_lifecycle(client, db):
    headers = session()
    await client.get("/v1/auth/me", headers=headers)
    await fund("maker@example.com", 8)

    r = await client.post("/v1/api-keys", json={"name": "bot", "credits": 6}, headers=headers)
    assert r.status_code == 200
    created = r.json()
    raw_key = created["key"]
    assert raw_key.startswith("sk_live_")
    assert created["credits"] == 6.0
    assert (await client.get("/v1/credits/balance", headers=headers)).json()["credits"] == 4.0

    r = await client.get("/v1/credits/balance", headers={"X-API-Key": raw_key})
    assert r.json() == {"owner_type": "api_key", "credits": 6.0}

    r = await client.post(f"/v1/api-keys/{created['id']}/top-up", json={"amount": 3}, headers=headers)
    assert r.json()["credits"] == 9.0
    assert r.json()["total_credits_loaded"] == 9.0

    r = await client.delete(f"/v1/api-keys/{created['id']}", headers=headers)
    assert r.json() == {"ok": True, "credits_returned": 9.0}
    assert (await client.get("/v1/credits/balance", headers=headers)).json()["credits"] == 10.0
    r = await client.get("/v1/credits/balance", headers={"X-API-Key": raw_key})
    assert r.status_code == 401


async def test_api_key_funding_needs_balance(client, db):
    headers = session()
    r = await client.post("/v1/api-keys", json={"name": "bot", "credits": 50}, headers=headers)
    assert r.status_code == 402
    assert r.json()["error"]["code"] == "INSUFFICIENT_CREDITS"
    assert (await client.get("/v1/api-keys", headers=headers)).json() == {"api_keys": []}


async def test_api_key_ip_allowlist(client, db):
    headers = session()
    r = await client.post("/v1/api-keys", json={"name": "office", "ip_allowlist": ["10.0.0.0/8"]}, headers=headers)
    raw_key = r.json()["key"]
    # the test transport connects from 127.0.0.1
    r = await client.get("/v1/credits/balance", headers={"X-API-Key": raw_key})
    assert r.status_code == 403
    r = await client.get("/v1/credits/balance", headers={"X-API-Key": raw_key, "X-Forwarded-For": "10.2.3.4"})
    assert r.status_code == 403
    assert r.json()["error"]["details"]["ip"] == "127.0.0.1"

    r = await client.post("/v1/api-keys", json={"name": "local", "ip_allowlist": ["127.0.0.1"]}, headers=headers)
    r = await client.get("/v1/credits/balance", headers={"X-API-Key": r.json()["key"], "X-Forwarded-For": "203.0.113.9"})
    assert r.status_code == 200


async def test_api_key_ip_allowlist_behind_trusted_proxy(db):
    from httpx import ASGITransport, AsyncClient
    from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

    from app.main import app

    proxied = ProxyHeadersMiddleware(app, trusted_hosts="127.0.0.1")
    async with AsyncClient(transport=ASGITransport(app=proxied), base_url="http://test") as ac:
        r = await ac.post("/v1/api-keys", json={"name": "office", "ip_allowlist": ["10.0.0.0/8"]}, headers=session())
        raw_key = r.json()["key"]
        r = await ac.get("/v1/credits/balance", headers={"X-API-Key": raw_key, "X-Forwarded-For": "10.2.3.4"})
        assert r.status_code == 200
        r = await ac.get("/v1/credits/balance", headers={"X-API-Key": raw_key, "X-Forwarded-For": "203.0.113.9"})
        assert r.status_code == 403


async def test_api_key_rejects_unknown_tools(client, db):
    r = await client.post(
        "/v1/api-keys", json={"name": "bot", "allowed_tools": ["audio.tts", "nope.nope"]}, headers=session()
    )
    assert r.status_code == 400
    assert r.json()["error"]["details"]["unknown_tools"] == ["nope.nope"]


async def test_agents(client, db):
    owner = session()
    r = await client.post("/v1/agents", json={"name": "voice", "tools": ["audio.tts", "audio.lip-sync"]}, headers=owner)
    assert r.status_code == 200
    agent_id = r.json()["agent_id"]

    r = await client.get(f"/v1/agents/{agent_id}/tools")
    assert [t["id"] for t in r.json()["tools"]] == ["audio.tts", "audio.lip-sync"]
    assert len((await client.get("/v1/agents", headers=owner)).json()["agents"]) == 1

    r = await client.delete(f"/v1/agents/{agent_id}", headers=session("other@example.com"))
    assert r.status_code == 403
    assert (await client.delete(f"/v1/agents/{agent_id}", headers=owner)).json() == {"ok": True}
    assert (await client.get(f"/v1/agents/{agent_id}")).status_code == 404


async def test_agent_with_unknown_tool(client, db):
    r = await client.post("/v1/agents", json={"name": "x", "tools": ["nope.nope"]}, headers=session())
    assert r.status_code == 400
    assert r.json()["error"]["details"]["unknown_tools"] == ["nope.nope"]


async def test_job_webhook_is_signed_with_key_secret(client, db):
    import httpx

    r = await client.post(
        "/v1/api-keys", json={"name": "hooked", "webhook_url": "https://hooks.example.com/genforge"}, headers=session()
    )
    created = r.json()
    secret = created["webhook_secret"]
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sent = await api_keys_service.notify_webhook(created["id"], "job.completed", {"request_id": "req-1"}, http=http)
    await http.aclose()
    assert sent
    request = received[0]
    ts = request.headers["X-GenForge-Signature"].split(",")[0][2:]
    assert request.headers["X-GenForge-Signature"] == api_keys_service.sign_webhook(secret, int(ts), request.content)


async def test_revoked_key_passes_late_refunds_to_owner(client, db):
    from app.models.api_key import ApiKey
    from app.models.gateway_job import GatewayJob
    from app.services import gateway as gateway_service

    headers = session()
    await client.get("/v1/auth/me", headers=headers)
    await fund("maker@example.com", 8)
    created = (await client.post("/v1/api-keys", json={"name": "bot", "credits": 6}, headers=headers)).json()
    key_owner = CreditOwner("api_key", created["id"])
    queued = await credits_service.reserve(key_owner, 2, "gateway")
    job = GatewayJob(
        request_id="req-late",
        tool_id="music.generate",
        model="CassetteAI/music-generator",
        owner_type="api_key",
        owner_id=created["id"],
        transaction_id=str(queued.id),
        credits=2.0,
    )
    await job.insert()
    stray = await credits_service.reserve(key_owner, 1, "generation")

    r = await client.delete(f"/v1/api-keys/{created['id']}", headers=headers)
    assert r.json() == {"ok": True, "credits_returned": 3.0}
    assert (await client.get("/v1/credits/balance", headers=headers)).json()["credits"] == 7.0

    # the queued job fails after revocation: its refund goes straight on to the owner
    assert await gateway_service._close_job(job, gateway_service.FAILED, error="FAILED")
    assert (await client.get("/v1/credits/balance", headers=headers)).json()["credits"] == 9.0
    assert await credits_service.get_balance(key_owner) == 0.0

    # a hold refunded outside the job flow is picked up by the sweeper
    assert await credits_service.refund(str(stray.id), reason="reservation_expired")
    assert await api_keys_service.return_revoked_balances() == 1
    assert (await client.get("/v1/credits/balance", headers=headers)).json()["credits"] == 10.0
    assert (await ApiKey.get(key_owner.object_id)).credits == 0.0

    # revoking again moves nothing and does not fail
    r = await client.delete(f"/v1/api-keys/{created['id']}", headers=headers)
    assert r.json() == {"ok": True, "credits_returned": 0.0}
