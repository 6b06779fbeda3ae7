from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import IndexModel


class ApiKey(Document):
    """Credit-bearing sub-account of a user, authenticated by a raw `sk_live_` key."""

    owner: PydanticObjectId
    name: str
    key_hash: str  # sha256 hex of the raw key
    key_prefix: str
    credits: float = 0.0
    total_credits_loaded: float = 0.0
    total_credits_spent: float = 0.0
    pending_reservations: list[str] = Field(default_factory=list)
    rate_limit_per_minute: int = 60
    rate_limit_per_day: int = 10000
    allowed_categories: list[str] = Field(default_factory=list)  # empty = all
    allowed_tools: list[str] = Field(default_factory=list)  # empty = all
    ip_allowlist: list[str] = Field(default_factory=list)  # empty = any
    webhook_url: str | None = None
    webhook_secret_encrypted: str = ""
    active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    total_requests: int = 0
    usage_by_tool: dict[str, int] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "api_keys"
        indexes = [
            IndexModel([("key_hash", 1)], unique=True),
            IndexModel([("owner", 1), ("created_at", -1)]),
            IndexModel([("pending_reservations", 1)]),
        ]
