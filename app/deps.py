"""Shared FastAPI dependencies."""

from fastapi import Request

from app.core.exceptions import UnauthorizedError
from app.core.logging import bind_owner
from app.core.security import load_session_token, looks_like_api_key
from app.models.api_key import ApiKey
from app.models.user import User
from app.services import api_keys as api_keys_service
from app.services.gateway import Payer
from app.services.users import user_from_session

SESSION_COOKIE_NAME = "genforge_session"
API_KEY_HEADER = "X-API-Key"


def _bearer(request: Request) -> str | None:
    auth = request.headers.get("Authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def client_ip(request: Request) -> str | None:
    # forwarded headers are applied by ProxyHeadersMiddleware, for TRUSTED_PROXIES only
    return request.client.host if request.client else None


def _session_token(request: Request) -> str | None:
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if cookie:
        return cookie
    bearer = _bearer(request)
    if bearer and not looks_like_api_key(bearer):
        return bearer
    return None


def _raw_api_key(request: Request) -> str | None:
    header = request.headers.get(API_KEY_HEADER)
    if header:
        return header.strip()
    bearer = _bearer(request)
    return bearer if looks_like_api_key(bearer) else None


async def get_optional_user(request: Request) -> User | None:
    token = _session_token(request)
    if not token:
        return None
    payload = load_session_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user = await user_from_session(payload)
    bind_owner("user", str(user.id))
    return user


async def get_current_user(request: Request) -> User:
    """Dependency: load the session from cookie or bearer token and return the User."""
    user = await get_optional_user(request)
    if user is None:
        raise UnauthorizedError("Not authenticated")
    return user


async def get_optional_api_key(request: Request) -> ApiKey | None:
    raw = _raw_api_key(request)
    if not raw:
        return None
    key = await api_keys_service.authenticate_api_key(raw, client_ip(request))
    await api_keys_service.enforce_rate_limit(key)
    bind_owner("api_key", str(key.id))
    return key


async def get_optional_payer(request: Request) -> Payer | None:
    """API key takes precedence over a session; None leaves room for x402."""
    key = await get_optional_api_key(request)
    if key is not None:
        return Payer(kind="api_key", api_key=key)
    user = await get_optional_user(request)
    if user is not None:
        return Payer(kind="user", user=user)
    return None


async def get_credit_payer(request: Request) -> Payer:
    payer = await get_optional_payer(request)
    if payer is None:
        raise UnauthorizedError("Authentication required: API key or session")
    return payer
