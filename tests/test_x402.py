import base64
import json

import httpx
import pytest

from app.core.config import Settings, get_settings
from app.core.exceptions import X402PaymentRequired
from app.services import gateway as gateway_service
from app.services import x402
from app.services.tool_registry import get_registry

TOOL_ID = "image.generate.flux-pro-kontext"
PAY_TO = "0x1111111111111111111111111111111111111111"


def requirements() -> dict:
    return x402.build_requirements(get_registry().get(TOOL_ID), {"prompt": "a cat"}, "http://test/v1/gateway/invoke")


def encoded(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()


def facilitator(handler) -> x402.FacilitatorClient:
    return x402.FacilitatorClient(url="https://facilitator.test", http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_build_requirements():
    req = requirements()
    assert req["scheme"] == "exact"
    assert req["maxAmountRequired"] == "65000"
    assert req["payTo"] == PAY_TO
    assert req["network"] == get_settings().x402_network
    assert req["extra"]["tool_id"] == TOOL_ID


def test_queue_tools_ask_for_a_longer_payment_window():
    veo = x402.build_requirements(get_registry().get("video.generate.veo3"), {"prompt": "a wave"}, "http://test")
    assert veo["maxTimeoutSeconds"] == 660
    assert requirements()["maxTimeoutSeconds"] == get_settings().x402_max_timeout_seconds


def test_decode_payment_header():
    assert x402.decode_payment_header(encoded({"scheme": "exact"})) == {"scheme": "exact"}
    assert x402.decode_payment_header("%%%not-base64") is None
    assert x402.decode_payment_header(base64.b64encode(b"[1, 2]").decode()) is None


def test_challenge_shape():
    body = x402.challenge({"scheme": "exact"}, "nope")
    assert body == {"x402Version": 1, "accepts": [{"scheme": "exact"}], "error": "nope"}


async def test_require_payment_without_header():
    with pytest.raises(X402PaymentRequired) as exc:
        await x402.require_payment(facilitator(lambda r: httpx.Response(500)), None, requirements())
    assert exc.value.body["accepts"][0]["maxAmountRequired"] == "65000"


async def test_require_payment_malformed_header():
    with pytest.raises(X402PaymentRequired) as exc:
        await x402.require_payment(facilitator(lambda r: httpx.Response(500)), "!!", requirements())
    assert exc.value.body["error"] == "Malformed X-PAYMENT header"


async def test_verify_and_settle():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        body = json.loads(request.content)
        assert body["paymentRequirements"]["payTo"] == PAY_TO
        if request.url.path.endswith("/verify"):
            return httpx.Response(200, json={"isValid": True, "payer": "0xabc"})
        return httpx.Response(200, json={"success": True, "transaction": "0xtx", "network": "eip155:8453"})

    fac = facilitator(handler)
    payment = await x402.require_payment(fac, encoded({"payload": {"signature": "0x1"}}), requirements())
    assert payment.payer == "0xabc"
    settlement = await fac.settle(payment)
    await fac.close()
    assert payment.transaction == "0xtx"
    assert settlement["success"] is True
    assert paths == ["/verify", "/settle"]
    assert json.loads(base64.b64decode(x402.encode_settlement(settlement)))["transaction"] == "0xtx"


async def test_invalid_payment_is_rejected():
    fac = facilitator(lambda r: httpx.Response(200, json={"isValid": False, "invalidReason": "insufficient_funds"}))
    with pytest.raises(X402PaymentRequired) as exc:
        await x402.require_payment(fac, encoded({"payload": {}}), requirements())
    await fac.close()
    assert "insufficient_funds" in exc.value.body["error"]


async def test_facilitator_errors_answer_402():
    fac = facilitator(lambda r: httpx.Response(503))
    with pytest.raises(X402PaymentRequired):
        await fac.verify({"payload": {}}, requirements())
    await fac.close()


async def test_invoke_without_auth_returns_402_challenge(client):
    r = await client.post(f"/v1/gateway/invoke/{TOOL_ID}", json={"prompt": "a cat"})
    assert r.status_code == 402
    body = r.json()
    assert body["x402Version"] == 1
    assert body["accepts"][0]["payTo"] == PAY_TO
    assert body["accepts"][0]["maxAmountRequired"] == "65000"


async def test_invoke_validates_input_before_payment(client):
    r = await client.post(f"/v1/gateway/invoke/{TOOL_ID}", json={})
    assert r.status_code == 400
    assert "Missing required field: prompt" in r.json()["error"]["details"]["errors"]


async def test_invoke_without_auth_when_x402_disabled(client, monkeypatch):
    disabled = Settings().model_copy(update={"x402_pay_to_address": ""})
    monkeypatch.setattr(gateway_service, "get_settings", lambda: disabled)
    r = await client.post(f"/v1/gateway/invoke/{TOOL_ID}", json={"prompt": "a cat"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"


async def test_invoke_with_payment_settles_after_success(client, monkeypatch, fake_fal):
    from app.main import app
    from app.services.fal import get_fal_client

    settled = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/verify"):
            return httpx.Response(200, json={"isValid": True, "payer": "0xabc"})
        settled.append(True)
        return httpx.Response(200, json={"success": True, "transaction": "0xtx"})

    async def no_record(payment, tool_id):
        return None

    fac = facilitator(handler)
    app.dependency_overrides[get_fal_client] = lambda: fake_fal
    monkeypatch.setattr("app.routers.gateway.get_facilitator", lambda: fac)
    monkeypatch.setattr(x402, "record_settlement", no_record)
    r = await client.post(
        f"/v1/gateway/invoke/{TOOL_ID}",
        json={"prompt": "a cat"},
        headers={"X-PAYMENT": encoded({"payload": {"signature": "0x1"}})},
    )
    await fac.close()
    assert r.status_code == 200
    body = r.json()
    assert body["result"] == fake_fal.run_output
    assert body["credits_charged"] == 0.0
    assert body["payment"] == {"transaction": "0xtx", "payer": "0xabc", "network": get_settings().x402_network}
    assert settled == [True]
    assert json.loads(base64.b64decode(r.headers["X-PAYMENT-RESPONSE"]))["transaction"] == "0xtx"


async def test_failed_call_is_not_settled(client, monkeypatch, fake_fal):
    from app.main import app
    from app.services.fal import FalError, get_fal_client

    settled = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/verify"):
            return httpx.Response(200, json={"isValid": True, "payer": "0xabc"})
        settled.append(True)
        return httpx.Response(200, json={"success": True, "transaction": "0xtx"})

    fac = facilitator(handler)
    fake_fal.run_error = FalError("provider down", 503)
    app.dependency_overrides[get_fal_client] = lambda: fake_fal
    monkeypatch.setattr("app.routers.gateway.get_facilitator", lambda: fac)
    r = await client.post(
        f"/v1/gateway/invoke/{TOOL_ID}",
        json={"prompt": "a cat"},
        headers={"X-PAYMENT": encoded({"payload": {"signature": "0x1"}})},
    )
    await fac.close()
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "UPSTREAM_ERROR"
    assert settled == []


@pytest.fixture
def queue_tool_paid(client, monkeypatch, fake_fal):
    """x402 wiring for the queued music tool, with instant polling."""
    from dataclasses import replace

    from app.main import app
    from app.services.fal import PollPolicy, get_fal_client

    settled = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/verify"):
            return httpx.Response(200, json={"isValid": True, "payer": "0xabc"})
        settled.append(True)
        return httpx.Response(200, json={"success": True, "transaction": "0xtx"})

    async def no_record(payment, tool_id):
        return None

    spec_for = gateway_service._spec_for
    monkeypatch.setattr(
        gateway_service, "_spec_for", lambda tool, data: replace(spec_for(tool, data), poll=PollPolicy(0, 5))
    )
    app.dependency_overrides[get_fal_client] = lambda: fake_fal
    monkeypatch.setattr("app.routers.gateway.get_facilitator", lambda: facilitator(handler))
    monkeypatch.setattr(x402, "record_settlement", no_record)
    return settled


async def test_queue_tool_paid_by_x402_settles_only_when_finished(client, fake_fal, queue_tool_paid):
    fake_fal.statuses = [{"status": "IN_PROGRESS"}, {"status": "COMPLETED"}]
    r = await client.post(
        "/v1/gateway/invoke/music.generate",
        json={"prompt": "lofi beat", "duration": 60},
        headers={"X-PAYMENT": encoded({"payload": {"signature": "0x1"}})},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["mode"] == "sync"
    assert body["result"] == fake_fal.result_output
    assert [c[0] for c in fake_fal.calls] == ["submit", "status", "status", "result"]
    assert queue_tool_paid == [True]
    assert "X-PAYMENT-RESPONSE" in r.headers


async def test_failed_queue_tool_paid_by_x402_is_not_settled(client, fake_fal, queue_tool_paid):
    fake_fal.statuses = [{"status": "FAILED", "error": "model crashed"}]
    r = await client.post(
        "/v1/gateway/invoke/music.generate",
        json={"prompt": "lofi beat"},
        headers={"X-PAYMENT": encoded({"payload": {"signature": "0x1"}})},
    )
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "UPSTREAM_ERROR"
    assert queue_tool_paid == []
