import hashlib
import ipaddress
import secrets
from typing import Any
from urllib.parse import urlparse

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.core.config import get_settings
from app.core.exceptions import BadRequestError

API_KEY_PREFIX = "sk_live_"
API_KEY_DISPLAY_PREFIX_LEN = 12


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="genforge-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_token(payload: dict[str, Any]) -> str:
    """Sign a session payload. Tokens are minted by the identity service; tests use this directly."""
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_token(token: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        data = serializer.loads(token, max_age=get_settings().session_max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None
    return data if isinstance(data, dict) else None


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(24)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def api_key_prefix(raw_key: str) -> str:
    return raw_key[:API_KEY_DISPLAY_PREFIX_LEN]


def looks_like_api_key(value: str | None) -> bool:
    return bool(value) and value.startswith(API_KEY_PREFIX)


def require_idempotency_key(key: str | None) -> str:
    if not key or not key.strip():
        raise BadRequestError("Idempotency-Key header is required for this request")
    key = key.strip()
    if len(key) > 200:
        raise BadRequestError("Idempotency-Key must be at most 200 characters")
    return key


def optional_idempotency_key(key: str | None) -> str | None:
    if key is None or not key.strip():
        return None
    return require_idempotency_key(key)


def validate_public_url(url: str, label: str = "URL", schemes: tuple[str, ...] = ("https", "http")) -> str:
    """Reject URLs the provider would fetch from private or local hosts."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if parsed.scheme not in schemes:
        raise BadRequestError(f"Invalid {label}: must use {' or '.join(schemes)}")
    if not host or host == "localhost" or host.endswith(".localhost") or host.endswith(".internal"):
        raise BadRequestError(f"Invalid {label}: must point to a public domain")
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return url
    raise BadRequestError(f"Invalid {label}: raw IP addresses are not allowed")
