from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from app.core.security import optional_idempotency_key
from app.deps import get_current_user
from app.models.user import User
from app.services import api_keys as api_keys_service
from app.services.pricing import MAX_CREDIT_AMOUNT

router = APIRouter()


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=api_keys_service.MAX_KEY_NAME_LENGTH)
    credits: float = Field(0, ge=0, le=MAX_CREDIT_AMOUNT)
    allowed_tools: list[str] = Field(default_factory=list)
    allowed_categories: list[str] = Field(default_factory=list)
    ip_allowlist: list[str] = Field(default_factory=list)
    webhook_url: str | None = None
    rate_limit_per_minute: int | None = Field(None, ge=1, le=10000)
    rate_limit_per_day: int | None = Field(None, ge=1, le=1000000)
    expires_in_days: int | None = Field(None, ge=1, le=3650)


class ApiKeyUpdate(BaseModel):
    name: str | None = Field(None, max_length=api_keys_service.MAX_KEY_NAME_LENGTH)
    allowed_tools: list[str] | None = None
    allowed_categories: list[str] | None = None
    ip_allowlist: list[str] | None = None
    webhook_url: str | None = None
    rate_limit_per_minute: int | None = Field(None, ge=1, le=10000)
    rate_limit_per_day: int | None = Field(None, ge=1, le=1000000)
    active: bool | None = None


class TopUpRequest(BaseModel):
    amount: float = Field(..., gt=0, le=MAX_CREDIT_AMOUNT)


@router.post("")
async def api_key_create(body: ApiKeyCreate, user: User = Depends(get_current_user)):
    """Create a key funded from the user's balance. The raw key is only shown here."""
    key, raw_key, webhook_secret = await api_keys_service.create_api_key(
        user,
        body.name,
        body.credits,
        allowed_tools=body.allowed_tools,
        allowed_categories=body.allowed_categories,
        ip_allowlist=body.ip_allowlist,
        webhook_url=body.webhook_url,
        rate_limit_per_minute=body.rate_limit_per_minute,
        rate_limit_per_day=body.rate_limit_per_day,
        expires_in_days=body.expires_in_days,
    )
    out = {**api_keys_service.api_key_out(key), "key": raw_key}
    if webhook_secret:
        out["webhook_secret"] = webhook_secret
    return out


@router.get("")
async def api_keys_list(user: User = Depends(get_current_user)):
    keys = await api_keys_service.list_api_keys(user)
    return {"api_keys": [api_keys_service.api_key_out(k) for k in keys]}


@router.get("/{key_id}")
async def api_key_get(key_id: str, user: User = Depends(get_current_user)):
    key = await api_keys_service.get_user_api_key(user, key_id)
    return api_keys_service.api_key_out(key)


@router.patch("/{key_id}")
async def api_key_update(key_id: str, body: ApiKeyUpdate, user: User = Depends(get_current_user)):
    key = await api_keys_service.update_api_key(user, key_id, body.model_dump(exclude_unset=True))
    return api_keys_service.api_key_out(key)


@router.post("/{key_id}/top-up")
async def api_key_top_up(
    key_id: str,
    body: TopUpRequest,
    user: User = Depends(get_current_user),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Move credits from the user's balance onto the key."""
    key = await api_keys_service.top_up_api_key(
        user, key_id, body.amount, optional_idempotency_key(idempotency_key)
    )
    return api_keys_service.api_key_out(key)


@router.delete("/{key_id}")
async def api_key_revoke(key_id: str, user: User = Depends(get_current_user)):
    """Revoke the key; its remaining credits go back to the user."""
    returned = await api_keys_service.revoke_api_key(user, key_id)
    return {"ok": True, "credits_returned": returned}
