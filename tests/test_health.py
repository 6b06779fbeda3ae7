from fastapi.testclient import TestClient

from app.main import app


def test_health():
    c = TestClient(app)
    r = c.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers.get("X-Request-ID")


def test_request_id_is_echoed():
    c = TestClient(app)
    r = c.get("/health", headers={"X-Request-ID": "req-abc"})
    assert r.headers["X-Request-ID"] == "req-abc"


def test_pricing_is_public():
    c = TestClient(app)
    r = c.get("/v1/credits/pricing")
    assert r.status_code == 200
    body = r.json()
    assert body["image"]["flux-pro-kontext"] == 0.5
    assert body["purchase"]["credits_per_dollar"] == 5


def test_unauthenticated_balance_uses_error_envelope():
    c = TestClient(app)
    r = c.get("/v1/credits/balance")
    assert r.status_code == 401
    body = r.json()
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert body["request_id"] == r.headers["X-Request-ID"]


def test_validation_error_envelope():
    c = TestClient(app)
    r = c.get("/v1/generate/status/req-1")  # model query parameter missing
    assert r.status_code == 422
    body = r.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"]["errors"]
