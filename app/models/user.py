import secrets
from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel

PAYMENT_HISTORY_LIMIT = 100
GENERATION_HISTORY_LIMIT = 20


def new_user_id() -> str:
    return f"usr_{secrets.token_hex(8)}"


class PaymentHistoryEntry(BaseModel):
    type: str  # stripe | subscription | x402
    payment_id: str
    amount_usd: float = 0.0
    credits: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class GenerationHistoryEntry(BaseModel):
    kind: str  # image | video | music | audio | 3d | tool
    model: str
    request_id: str | None = None
    credits: float = 0.0
    output: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class User(Document):
    user_id: str = Field(default_factory=new_user_id)
    wallet_address: str | None = None
    email: str | None = None
    credits: float = 0.0
    total_credits_earned: float = 0.0
    total_credits_spent: float = 0.0
    # CreditTransaction ids applied to `credits` but not yet settled
    pending_reservations: list[str] = Field(default_factory=list)
    payment_history: list[PaymentHistoryEntry] = Field(default_factory=list)
    generation_history: list[GenerationHistoryEntry] = Field(default_factory=list)
    session_version: int = 0
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
        indexes = [
            IndexModel([("user_id", 1)], unique=True),
            IndexModel(
                [("wallet_address", 1)],
                unique=True,
                partialFilterExpression={"wallet_address": {"$type": "string"}},
            ),
            IndexModel(
                [("email", 1)],
                unique=True,
                partialFilterExpression={"email": {"$type": "string"}},
            ),
            IndexModel([("pending_reservations", 1)]),
        ]
