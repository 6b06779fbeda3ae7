import hashlib
import hmac

import pytest

from app.core.exceptions import BadRequestError
from app.core.security import (
    api_key_prefix,
    create_session_token,
    generate_api_key,
    hash_api_key,
    load_session_token,
    looks_like_api_key,
    optional_idempotency_key,
    require_idempotency_key,
    validate_public_url,
)
from app.services.api_keys import ip_allowed, validate_ip_allowlist, validate_webhook_url


def test_session_token_round_trip():
    token = create_session_token({"user_id": "u1"})
    assert load_session_token(token) == {"user_id": "u1"}


def test_tampered_session_token_is_rejected():
    token = create_session_token({"user_id": "u1"})
    assert load_session_token(token[:-2] + "xx") is None
    assert load_session_token("garbage") is None


def test_api_key_shape():
    raw = generate_api_key()
    assert looks_like_api_key(raw)
    assert not looks_like_api_key("some-session-token")
    assert not looks_like_api_key(None)
    assert len(hash_api_key(raw)) == 64
    assert hash_api_key(raw) == hash_api_key(raw)
    assert hash_api_key(raw) != hash_api_key(generate_api_key())
    assert api_key_prefix(raw) == raw[:12]


def test_idempotency_keys():
    assert require_idempotency_key("  abc ") == "abc"
    assert optional_idempotency_key(None) is None
    assert optional_idempotency_key("  ") is None
    with pytest.raises(BadRequestError):
        require_idempotency_key("")
    with pytest.raises(BadRequestError):
        require_idempotency_key("k" * 201)


@pytest.mark.parametrize(
    "url",
    ["https://cdn.example.com/a.png", "http://media.example.org/clip.mp4"],
)
def test_public_urls_pass(url):
    assert validate_public_url(url) == url


@pytest.mark.parametrize(
    "url",
    [
        "ftp://example.com/a.png",
        "https://localhost/a.png",
        "https://api.localhost/x",
        "http://metadata.internal/latest",
        "https://127.0.0.1/a.png",
        "http://[::1]/a.png",
        "https:///nohost",
    ],
)
def test_private_urls_rejected(url):
    with pytest.raises(BadRequestError):
        validate_public_url(url)


def test_webhook_url_requires_https():
    assert validate_webhook_url("https://hooks.example.com/genforge")
    with pytest.raises(BadRequestError):
        validate_webhook_url("http://hooks.example.com/genforge")


def test_ip_allowlist():
    assert validate_ip_allowlist([" 10.0.0.0/8 ", "", "203.0.113.7"]) == ["10.0.0.0/8", "203.0.113.7"]
    with pytest.raises(BadRequestError):
        validate_ip_allowlist(["not-an-ip"])
    assert ip_allowed("1.2.3.4", [])
    assert ip_allowed("10.1.2.3", ["10.0.0.0/8"])
    assert not ip_allowed("11.1.2.3", ["10.0.0.0/8"])
    assert not ip_allowed(None, ["10.0.0.0/8"])
    assert not ip_allowed("bogus", ["10.0.0.0/8"])


def test_webhook_signature():
    from app.services.api_keys import sign_webhook

    body = b'{"event":"job.completed"}'
    header = sign_webhook("whsec_abc", 1700000000, body)
    ts, mac = header.split(",")
    assert ts == "t=1700000000"
    expected = hmac.new(b"whsec_abc", b"1700000000." + body, hashlib.sha256).hexdigest()
    assert mac == f"v1={expected}"
