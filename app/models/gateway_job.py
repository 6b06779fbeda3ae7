from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import IndexModel


class GatewayJob(Document):
    """Queued provider request and the credit transaction holding its payment."""

    request_id: str
    tool_id: str
    model: str
    owner_type: str | None = None
    owner_id: str | None = None
    transaction_id: str | None = None
    credits: float = 0.0
    status: str = "IN_QUEUE"  # IN_QUEUE | COMPLETED | FAILED | EXPIRED
    error: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "gateway_jobs"
        indexes = [
            IndexModel([("request_id", 1)], unique=True),
            IndexModel([("transaction_id", 1)]),
            IndexModel([("status", 1), ("created_at", 1)]),
        ]
