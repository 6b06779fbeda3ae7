from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field
from pymongo import IndexModel

OwnerType = Literal["user", "api_key"]
TransactionKind = Literal["debit", "grant"]

# debit: pending -> held -> committed | refunded; pending -> rejected
# grant: pending -> applying -> committed
PENDING = "pending"
HELD = "held"
APPLYING = "applying"
COMMITTED = "committed"
REFUNDED = "refunded"
REJECTED = "rejected"

FINAL_STATUSES = (COMMITTED, REFUNDED, REJECTED)


class CreditTransaction(Document):
    """Durable intent log entry for every credit movement; also the user-visible ledger."""

    owner_type: OwnerType
    owner_id: str
    kind: TransactionKind
    amount: float  # always positive; kind gives the direction
    reason: str  # generation, gateway, purchase, subscription, signup_bonus, api_key_funding, api_key_refund
    reference_type: str | None = None
    reference_id: str | None = None
    idempotency_key: str | None = None
    status: str = PENDING
    failure_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            IndexModel([("owner_type", 1), ("owner_id", 1), ("created_at", -1)]),
            IndexModel(
                [("owner_type", 1), ("owner_id", 1), ("idempotency_key", 1)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
            IndexModel([("status", 1), ("expires_at", 1)]),
            IndexModel([("status", 1), ("updated_at", 1)]),
        ]

    @property
    def signed_amount(self) -> float:
        return -self.amount if self.kind == "debit" else self.amount
