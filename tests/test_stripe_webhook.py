import hashlib
import hmac
import json
import time

import pytest

from app.core.exceptions import BadRequestError
from app.services import stripe_payments

SECRET = "whsec_test_secret"


def sign(payload: str, secret: str = SECRET) -> str:
    ts = int(time.time())
    mac = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def event(event_type: str, obj: dict) -> str:
    return json.dumps({"id": "evt_1", "object": "event", "type": event_type, "data": {"object": obj}})


def test_construct_event_accepts_valid_signature():
    payload = event("payment_intent.created", {"id": "pi_1"})
    out = stripe_payments.construct_event(payload.encode(), sign(payload))
    assert out["type"] == "payment_intent.created"
    assert out["data"]["object"]["id"] == "pi_1"


def test_construct_event_rejects_tampered_payload():
    payload = event("payment_intent.succeeded", {"id": "pi_1"})
    header = sign(payload)
    with pytest.raises(BadRequestError):
        stripe_payments.construct_event(payload.replace("pi_1", "pi_2").encode(), header)
    with pytest.raises(BadRequestError):
        stripe_payments.construct_event(payload.encode(), None)


def test_grant_key_is_stable():
    assert stripe_payments.grant_key("pi_1") == "stripe_pi_1"


async def test_webhook_route_rejects_bad_signature(client):
    payload = event("payment_intent.succeeded", {"id": "pi_1"})
    r = await client.post(
        "/v1/payments/stripe/webhook",
        content=payload,
        headers={"Stripe-Signature": sign(payload, "whsec_wrong")},
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "BAD_REQUEST"


async def test_webhook_route_ignores_other_events(client):
    payload = event("charge.refunded", {"id": "ch_1"})
    r = await client.post("/v1/payments/stripe/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert r.status_code == 200
    assert r.json() == {"received": True, "handled": False}


async def test_webhook_route_skips_unmatched_intent(client, monkeypatch):
    async def no_user(metadata):
        return None

    monkeypatch.setattr(stripe_payments, "_resolve_user", no_user)
    payload = event("payment_intent.succeeded", {"id": "pi_1", "amount": 2000, "metadata": {"credits": "110"}})
    r = await client.post("/v1/payments/stripe/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert r.json() == {"received": True, "handled": False}


async def test_webhook_route_credits_payment(client, monkeypatch):
    user = object()
    granted = []

    async def resolve(metadata):
        return user

    async def credit(u, payment_id, payment_type, amount_usd, credits, metadata=None):
        granted.append((payment_id, payment_type, amount_usd, credits))
        return {"already_processed": False, "credits_added": credits, "credits": credits}

    monkeypatch.setattr(stripe_payments, "_resolve_user", resolve)
    monkeypatch.setattr(stripe_payments, "credit_payment", credit)
    payload = event(
        "payment_intent.succeeded",
        {"id": "pi_9", "amount": 2000, "metadata": {"user_id": "u1", "credits": "110"}},
    )
    r = await client.post("/v1/payments/stripe/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})
    body = r.json()
    assert body["handled"] is True
    assert body["credits_added"] == 110
    assert granted == [("pi_9", "stripe", 20.0, 110.0)]
