from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field
from pymongo import IndexModel


class AuditLog(Document):
    user_id: str | None = None  # None for sweeper and anonymous x402 events
    event_type: str  # payment_credited, api_key_created, reservation_swept, ...
    entity_type: str  # payment | api_key | credit_transaction | agent
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            IndexModel([("user_id", 1), ("created_at", -1)]),
            IndexModel([("entity_type", 1), ("entity_id", 1)]),
            IndexModel([("event_type", 1), ("created_at", -1)]),
        ]
