"""API keys: credit-bearing sub-accounts funded from the owner's balance."""

import hashlib
import hmac
import ipaddress
import time
from datetime import datetime, timedelta
from typing import Any

import httpx
import orjson
from beanie import PydanticObjectId
from bson.errors import InvalidId

from app.core.audit import log_event
from app.core.encryption import decrypt_secret, encrypt_secret, generate_webhook_secret
from app.core.exceptions import (
    BadRequestError,
    ForbiddenError,
    InsufficientCreditsError,
    NotFoundError,
    UnauthorizedError,
)
from app.core.logging import get_logger
from app.core.security import api_key_prefix, generate_api_key, hash_api_key, validate_public_url
from app.models.api_key import ApiKey
from app.models.user import User
from app.services import credits as credits_service
from app.services import rate_limit
from app.services.credits import CreditOwner
from app.services.tool_registry import ToolDefinition, get_registry

log = get_logger(__name__)

MAX_ACTIVE_KEYS_PER_USER = 10
MAX_KEY_NAME_LENGTH = 100
WEBHOOK_TIMEOUT_SECONDS = 10.0
WEBHOOK_SIGNATURE_HEADER = "X-GenForge-Signature"

UPDATABLE_FIELDS = (
    "name",
    "allowed_tools",
    "allowed_categories",
    "ip_allowlist",
    "rate_limit_per_minute",
    "rate_limit_per_day",
    "webhook_url",
    "active",
)


def validate_webhook_url(url: str) -> str:
    return validate_public_url(url, "webhook URL", schemes=("https",))


def validate_ip_allowlist(entries: list[str]) -> list[str]:
    out = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError as e:
            raise BadRequestError(f"Invalid IP allowlist entry: {entry}") from e
        out.append(entry)
    return out


def ip_allowed(client_ip: str | None, allowlist: list[str]) -> bool:
    if not allowlist:
        return True
    if not client_ip:
        return False
    try:
        addr = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if addr in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def _validate_tool_scope(allowed_tools: list[str] | None) -> None:
    if not allowed_tools:
        return
    ok, unknown = get_registry().validate_tool_ids(allowed_tools)
    if not ok:
        raise BadRequestError("Unknown tools in allowed_tools", details={"unknown_tools": unknown})


async def transfer_credits(source: CreditOwner, target: CreditOwner, amount: float, key: str, reason: str) -> float:
    """Move credits between two owners: hold on the source, grant to the target, then commit."""
    txn = await credits_service.reserve(source, amount, reason, idempotency_key=key, reference_type="transfer")
    tid = str(txn.id)
    try:
        await credits_service.grant(target, txn.amount, reason, key, reference_type="transfer", reference_id=tid)
    except BaseException as e:
        await credits_service.refund(tid, reason=f"transfer_failed: {e}")
        raise
    await credits_service.commit(tid)
    return txn.amount


async def create_api_key(
    user: User,
    name: str,
    credits: float = 0.0,
    *,
    allowed_tools: list[str] | None = None,
    allowed_categories: list[str] | None = None,
    ip_allowlist: list[str] | None = None,
    webhook_url: str | None = None,
    rate_limit_per_minute: int | None = None,
    rate_limit_per_day: int | None = None,
    expires_in_days: int | None = None,
) -> tuple[ApiKey, str, str | None]:
    """Returns (key, raw_key, webhook_secret). The raw key and secret are never stored."""
    name = name.strip()
    if not name:
        raise BadRequestError("Key name is required")
    if len(name) > MAX_KEY_NAME_LENGTH:
        raise BadRequestError(f"Key name must be {MAX_KEY_NAME_LENGTH} characters or less")
    if webhook_url:
        validate_webhook_url(webhook_url)
    _validate_tool_scope(allowed_tools)
    active_count = await ApiKey.find(ApiKey.owner == user.id, ApiKey.active == True).count()  # noqa: E712
    if active_count >= MAX_ACTIVE_KEYS_PER_USER:
        raise BadRequestError(f"Maximum {MAX_ACTIVE_KEYS_PER_USER} active API keys per account")

    raw_key = generate_api_key()
    webhook_secret = generate_webhook_secret() if webhook_url else None
    key = ApiKey(
        owner=user.id,
        name=name,
        key_hash=hash_api_key(raw_key),
        key_prefix=api_key_prefix(raw_key),
        allowed_tools=allowed_tools or [],
        allowed_categories=allowed_categories or [],
        ip_allowlist=validate_ip_allowlist(ip_allowlist or []),
        webhook_url=webhook_url,
        webhook_secret_encrypted=encrypt_secret(webhook_secret or ""),
        expires_at=datetime.utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    if rate_limit_per_minute:
        key.rate_limit_per_minute = rate_limit_per_minute
    if rate_limit_per_day:
        key.rate_limit_per_day = rate_limit_per_day
    await key.insert()

    if credits and credits > 0:
        try:
            await transfer_credits(
                CreditOwner.for_user(user), CreditOwner.for_api_key(key), credits, f"apikey_fund_{key.id}", "api_key_funding"
            )
        except BaseException:
            await key.delete()
            raise
        key = await ApiKey.get(key.id) or key

    log.info("api_key_created", api_key_id=str(key.id), prefix=key.key_prefix, credits=key.credits)
    await log_event(
        str(user.id), "api_key_created", "api_key", str(key.id), {"prefix": key.key_prefix, "credits": key.credits}
    )
    return key, raw_key, webhook_secret


async def list_api_keys(user: User) -> list[ApiKey]:
    return await ApiKey.find(ApiKey.owner == user.id).sort(-ApiKey.created_at).to_list()


async def get_user_api_key(user: User, key_id: str) -> ApiKey:
    try:
        oid = PydanticObjectId(key_id)
    except (InvalidId, TypeError) as e:
        raise NotFoundError("API key not found") from e
    key = await ApiKey.find_one(ApiKey.id == oid, ApiKey.owner == user.id)
    if not key:
        raise NotFoundError("API key not found")
    return key


async def update_api_key(user: User, key_id: str, changes: dict[str, Any]) -> ApiKey:
    key = await get_user_api_key(user, key_id)
    changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS and v is not None}
    if "webhook_url" in changes and changes["webhook_url"]:
        validate_webhook_url(changes["webhook_url"])
        if not key.webhook_secret_encrypted:
            key.webhook_secret_encrypted = encrypt_secret(generate_webhook_secret())
    if "allowed_tools" in changes:
        _validate_tool_scope(changes["allowed_tools"])
    if "ip_allowlist" in changes:
        changes["ip_allowlist"] = validate_ip_allowlist(changes["ip_allowlist"])
    if "name" in changes and not str(changes["name"]).strip():
        raise BadRequestError("Key name is required")
    for field, value in changes.items():
        setattr(key, field, value)
    key.updated_at = datetime.utcnow()
    await key.save()
    log.info("api_key_updated", api_key_id=key_id, fields=sorted(changes))
    return key


async def top_up_api_key(user: User, key_id: str, amount: float, idempotency_key: str | None = None) -> ApiKey:
    key = await get_user_api_key(user, key_id)
    if not key.active:
        raise BadRequestError("Cannot top up a revoked API key")
    transfer_key = f"apikey_topup_{key.id}_{idempotency_key or PydanticObjectId()}"
    moved = await transfer_credits(
        CreditOwner.for_user(user), CreditOwner.for_api_key(key), amount, transfer_key, "api_key_top_up"
    )
    await log_event(str(user.id), "api_key_top_up", "api_key", key_id, {"credits": moved})
    return await ApiKey.get(key.id) or key


async def return_key_balance(key: ApiKey) -> float:
    """
    Move whatever a revoked key holds back to its owner.

    Refunds of jobs that were in flight at revocation land on the key after the
    revoke call, so this runs again when they close and from the sweeper.
    Every call transfers under its own idempotency key.
    """
    source = CreditOwner.for_api_key(key)
    remaining = await credits_service.get_balance(source)
    if remaining <= 0:
        return 0.0
    transfer_key = f"apikey_revoke_{key.id}_{PydanticObjectId()}"
    try:
        return await transfer_credits(
            source, CreditOwner("user", str(key.owner)), remaining, transfer_key, "api_key_revoked"
        )
    except InsufficientCreditsError:
        # a concurrent return already moved it
        log.info("api_key_balance_already_returned", api_key_id=str(key.id))
        return 0.0


async def return_revoked_balances(limit: int = 100) -> int:
    """Sweeper pass: revoked keys that were refunded after revocation."""
    keys = await ApiKey.find({"active": False, "credits": {"$gt": 0}}).limit(limit).to_list()
    returned = 0
    for key in keys:
        if await return_key_balance(key) > 0:
            returned += 1
    return returned


async def revoke_api_key(user: User, key_id: str) -> float:
    """Deactivate the key and return its remaining balance to the owner."""
    key = await get_user_api_key(user, key_id)
    await ApiKey.get_motor_collection().update_one(
        {"_id": key.id}, {"$set": {"active": False, "updated_at": datetime.utcnow()}}
    )
    returned = await return_key_balance(key)
    log.info("api_key_revoked", api_key_id=key_id, prefix=key.key_prefix, credits_returned=returned)
    await log_event(str(user.id), "api_key_revoked", "api_key", key_id, {"credits_returned": returned})
    return returned


async def authenticate_api_key(raw_key: str, client_ip: str | None = None) -> ApiKey:
    key = await ApiKey.find_one(ApiKey.key_hash == hash_api_key(raw_key))
    if not key or not key.active:
        raise UnauthorizedError("Invalid or revoked API key")
    if key.expires_at and key.expires_at <= datetime.utcnow():
        raise UnauthorizedError("API key expired")
    if not ip_allowed(client_ip, key.ip_allowlist):
        log.warning("api_key_ip_blocked", api_key_id=str(key.id), ip=client_ip)
        raise ForbiddenError("IP address not allowed for this API key", details={"ip": client_ip})
    return key


def check_tool_access(key: ApiKey, tool: ToolDefinition) -> None:
    if key.allowed_tools and tool.id not in key.allowed_tools:
        raise ForbiddenError("This API key is not allowed to use this tool", details={"tool_id": tool.id})
    if key.allowed_categories and tool.category not in key.allowed_categories:
        raise ForbiddenError(
            "This API key is not allowed to use this tool category", details={"category": tool.category}
        )


async def enforce_rate_limit(key: ApiKey) -> None:
    await rate_limit.hit(rate_limit.get_redis(), str(key.id), key.rate_limit_per_minute, key.rate_limit_per_day)


async def record_usage(key: ApiKey, tool_id: str | None = None) -> None:
    inc: dict[str, int] = {"total_requests": 1}
    if tool_id:
        inc[f"usage_by_tool.{tool_id.replace('.', '_')}"] = 1
    await ApiKey.get_motor_collection().update_one(
        {"_id": key.id}, {"$inc": inc, "$set": {"last_used_at": datetime.utcnow()}}
    )


def api_key_out(key: ApiKey) -> dict[str, Any]:
    return {
        "id": str(key.id),
        "name": key.name,
        "key_prefix": key.key_prefix,
        "credits": round(key.credits, 2),
        "total_credits_loaded": round(key.total_credits_loaded, 2),
        "total_credits_spent": round(key.total_credits_spent, 2),
        "rate_limit_per_minute": key.rate_limit_per_minute,
        "rate_limit_per_day": key.rate_limit_per_day,
        "allowed_tools": key.allowed_tools,
        "allowed_categories": key.allowed_categories,
        "ip_allowlist": key.ip_allowlist,
        "webhook_url": key.webhook_url,
        "active": key.active,
        "expires_at": key.expires_at,
        "last_used_at": key.last_used_at,
        "total_requests": key.total_requests,
        "usage_by_tool": key.usage_by_tool,
        "created_at": key.created_at,
    }


def sign_webhook(secret: str, timestamp: int, body: bytes) -> str:
    """Stripe-style signature: `t=<unix>,v1=<hmac_sha256(secret, "<t>.<body>")>`."""
    mac = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={mac}"


async def notify_webhook(
    key_id: str, event: str, data: dict[str, Any], http: httpx.AsyncClient | None = None
) -> bool:
    """POST a signed event to the key's webhook URL. Delivery failures are logged, never raised."""
    key = await ApiKey.get(PydanticObjectId(key_id))
    if key is None or not key.webhook_url:
        return False
    secret = decrypt_secret(key.webhook_secret_encrypted)
    body = orjson.dumps({"event": event, "api_key_id": key_id, "data": data, "created_at": datetime.utcnow()})
    headers = {"Content-Type": "application/json"}
    if secret:
        headers[WEBHOOK_SIGNATURE_HEADER] = sign_webhook(secret, int(time.time()), body)
    try:
        if http is not None:
            resp = await http.post(key.webhook_url, content=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
                resp = await client.post(key.webhook_url, content=body, headers=headers)
    except httpx.HTTPError as e:
        log.warning("api_key_webhook_failed", api_key_id=key_id, webhook_event=event, error=str(e))
        return False
    if resp.status_code >= 400:
        log.warning("api_key_webhook_rejected", api_key_id=key_id, webhook_event=event, status_code=resp.status_code)
        return False
    log.info("api_key_webhook_sent", api_key_id=key_id, webhook_event=event)
    return True
