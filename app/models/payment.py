from datetime import datetime
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import IndexModel


class Payment(Document):
    """Append-only record reconciling an external payment with a credit grant."""

    user_id: PydanticObjectId | None = None  # None for anonymous x402 calls
    payment_id: str  # Stripe payment intent / invoice id, x402 settlement tx
    type: str  # stripe | subscription | x402
    amount_usd: float = 0.0
    credits: float = 0.0
    status: str = "succeeded"
    transaction_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "payments"
        indexes = [
            IndexModel([("payment_id", 1)], unique=True),
            IndexModel([("user_id", 1), ("created_at", -1)]),
        ]
