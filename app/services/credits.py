"""Credit ledger: idempotent reservations backed by a durable intent log.

Every credit movement is first written as a ``CreditTransaction`` (the intent) and
then applied to the owner document with one conditional ``find_one_and_update`` that
also pushes the transaction id onto ``pending_reservations``. The id is pulled only
after the transaction has reached a final status, so whatever step a process dies
in, ``sweep_stale`` can tell whether the owner was touched and finish or undo it:

    owner lists id | status            | meaning
    ---------------+-------------------+---------------------------------------
    no             | pending           | never applied
    yes            | pending/held      | debited, outcome unknown -> refund when expired
    yes            | committed/refunded| final, owner not yet settled -> settle
    no             | applying (grant)  | claimed, not applied -> apply
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

from beanie import PydanticObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.config import get_settings
from app.core.exceptions import ConflictError, InsufficientCreditsError, NotFoundError
from app.core.logging import get_logger
from app.models.api_key import ApiKey
from app.models.credit_transaction import (
    APPLYING,
    COMMITTED,
    HELD,
    PENDING,
    REFUNDED,
    REJECTED,
    CreditTransaction,
    OwnerType,
)
from app.models.user import PAYMENT_HISTORY_LIMIT, User
from app.services.pricing import round_credits, validate_credit_amount

log = get_logger(__name__)

OWNER_MODELS = {"user": User, "api_key": ApiKey}
EARNED_FIELD = {"user": "total_credits_earned", "api_key": "total_credits_loaded"}

# grants stuck in pending/applying longer than this are rolled forward by the sweeper
GRANT_STALE_SECONDS = 120
# balances are doubles; a stored 0.09999999999999998 still covers a 0.1 debit
CREDIT_EPSILON = 1e-6


@dataclass(frozen=True)
class CreditOwner:
    owner_type: OwnerType
    owner_id: str

    @classmethod
    def for_user(cls, user: User) -> "CreditOwner":
        return cls("user", str(user.id))

    @classmethod
    def for_api_key(cls, api_key: ApiKey) -> "CreditOwner":
        return cls("api_key", str(api_key.id))

    @property
    def object_id(self) -> PydanticObjectId:
        return PydanticObjectId(self.owner_id)

    def collection(self):
        return OWNER_MODELS[self.owner_type].get_motor_collection()


def _txn_collection():
    return CreditTransaction.get_motor_collection()


async def get_balance(owner: CreditOwner) -> float:
    doc = await owner.collection().find_one({"_id": owner.object_id}, {"credits": 1})
    if doc is None:
        raise NotFoundError(f"{owner.owner_type} not found")
    return round_credits(doc.get("credits", 0.0))


async def get_transaction(transaction_id: str) -> CreditTransaction:
    txn = await CreditTransaction.get(PydanticObjectId(transaction_id))
    if not txn:
        raise NotFoundError("Credit transaction not found")
    return txn


async def list_transactions(owner: CreditOwner, limit: int, offset: int) -> tuple[list[CreditTransaction], int]:
    query = CreditTransaction.find(
        CreditTransaction.owner_type == owner.owner_type,
        CreditTransaction.owner_id == owner.owner_id,
    )
    total = await query.count()
    items = await query.sort(-CreditTransaction.created_at).skip(offset).limit(limit).to_list()
    return items, total


async def _find_by_key(owner: CreditOwner, idempotency_key: str) -> CreditTransaction | None:
    return await CreditTransaction.find_one(
        CreditTransaction.owner_type == owner.owner_type,
        CreditTransaction.owner_id == owner.owner_id,
        CreditTransaction.idempotency_key == idempotency_key,
    )


async def _set_status(transaction_id: str, from_statuses: tuple[str, ...], to_status: str, **fields: Any) -> bool:
    """Compare-and-set on the intent's status; True if this caller made the transition."""
    res = await _txn_collection().update_one(
        {"_id": PydanticObjectId(transaction_id), "status": {"$in": list(from_statuses)}},
        {"$set": {"status": to_status, "updated_at": datetime.utcnow(), **fields}},
    )
    return res.modified_count == 1


async def _normalize(owner: CreditOwner, doc: dict[str, Any] | None) -> None:
    """Snap a balance moved by $inc back to hundredths, unless another write got there first."""
    if not doc or "credits" not in doc:
        return
    raw = doc["credits"]
    rounded = round_credits(raw)
    if rounded != raw:
        await owner.collection().update_one({"_id": owner.object_id, "credits": raw}, {"$set": {"credits": rounded}})


async def _settle(txn: CreditTransaction) -> bool:
    """Finish a final-status transaction on the owner document. Idempotent."""
    owner = CreditOwner(txn.owner_type, txn.owner_id)
    tid = str(txn.id)
    update: dict[str, Any] = {"$pull": {"pending_reservations": tid}, "$set": {"updated_at": datetime.utcnow()}}
    if txn.kind == "debit" and txn.status == COMMITTED:
        update["$inc"] = {"total_credits_spent": txn.amount}
    elif txn.kind == "debit" and txn.status == REFUNDED:
        update["$inc"] = {"credits": txn.amount}
    elif txn.status not in (COMMITTED, REFUNDED):
        return False
    doc = await owner.collection().find_one_and_update(
        {"_id": owner.object_id, "pending_reservations": tid},
        update,
        projection={"credits": 1},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        return False
    await _normalize(owner, doc)
    return True


async def reserve(
    owner: CreditOwner,
    amount: float,
    reason: str,
    *,
    idempotency_key: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    ttl_seconds: int | None = None,
) -> CreditTransaction:
    """
    Hold `amount` credits for a pending operation.

    Returns a transaction in status `held`. The same idempotency key returns the
    existing transaction instead of debiting twice. Raises InsufficientCreditsError
    (402) and leaves the balance untouched when the owner cannot cover the amount.
    """
    txn, _ = await reserve_once(
        owner,
        amount,
        reason,
        idempotency_key=idempotency_key,
        reference_type=reference_type,
        reference_id=reference_id,
        metadata=metadata,
        ttl_seconds=ttl_seconds,
    )
    return txn


async def reserve_once(
    owner: CreditOwner,
    amount: float,
    reason: str,
    *,
    idempotency_key: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    ttl_seconds: int | None = None,
) -> tuple[CreditTransaction, bool]:
    """Like `reserve`, also reporting whether this call placed the hold (False on replay)."""
    amount = validate_credit_amount(amount)
    ttl = ttl_seconds or get_settings().reservation_ttl_seconds
    expires_at = datetime.utcnow() + timedelta(seconds=ttl)

    if idempotency_key:
        existing = await _find_by_key(owner, idempotency_key)
        if existing:
            return await _resume_existing_debit(owner, existing, expires_at)

    txn = CreditTransaction(
        owner_type=owner.owner_type,
        owner_id=owner.owner_id,
        kind="debit",
        amount=amount,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        metadata=metadata or {},
        status=PENDING,
        expires_at=expires_at,
    )
    try:
        await txn.insert()
    except DuplicateKeyError:
        existing = await _find_by_key(owner, idempotency_key or "")
        if existing is None:
            raise
        return await _resume_existing_debit(owner, existing, expires_at)
    return await _apply_debit(owner, txn), True


async def _resume_existing_debit(
    owner: CreditOwner, txn: CreditTransaction, expires_at: datetime
) -> tuple[CreditTransaction, bool]:
    if txn.kind != "debit":
        raise ConflictError("Idempotency key already used for a different operation")
    if txn.status == REJECTED:
        # a rejected attempt did not consume the key; retry it (e.g. after a top-up)
        if await _set_status(str(txn.id), (REJECTED,), PENDING, expires_at=expires_at, failure_reason=None):
            txn.status = PENDING
            txn.expires_at = expires_at
            return await _apply_debit(owner, txn), True
        txn = await get_transaction(str(txn.id))
    log.info("credits_reserve_replayed", transaction_id=str(txn.id), status=txn.status)
    return txn, False


async def _apply_debit(owner: CreditOwner, txn: CreditTransaction) -> CreditTransaction:
    tid = str(txn.id)
    now = datetime.utcnow()
    updated = await owner.collection().find_one_and_update(
        {
            "_id": owner.object_id,
            "credits": {"$gte": txn.amount - CREDIT_EPSILON},
            "pending_reservations": {"$ne": tid},
        },
        {
            "$inc": {"credits": -txn.amount},
            "$push": {"pending_reservations": tid},
            "$set": {"updated_at": now},
        },
        projection={"credits": 1},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        doc = await owner.collection().find_one({"_id": owner.object_id}, {"credits": 1})
        await _set_status(tid, (PENDING,), REJECTED, failure_reason="insufficient_credits")
        if doc is None:
            raise NotFoundError(f"{owner.owner_type} not found")
        available = round_credits(doc.get("credits", 0.0))
        log.info(
            "credits_rejected",
            owner_type=owner.owner_type,
            owner_id=owner.owner_id,
            required=txn.amount,
            available=available,
        )
        raise InsufficientCreditsError(txn.amount, available)

    await _normalize(owner, updated)
    await _set_status(tid, (PENDING,), HELD)
    txn.status = HELD
    log.info(
        "credits_reserved",
        owner_type=owner.owner_type,
        owner_id=owner.owner_id,
        transaction_id=tid,
        amount=txn.amount,
        reason=txn.reason,
        balance_after=round_credits(updated.get("credits", 0.0)),
    )
    return txn


async def extend_hold(transaction_id: str, ttl_seconds: int) -> bool:
    """Push out the expiry of a held reservation (queued jobs outlive request TTLs)."""
    res = await _txn_collection().update_one(
        {"_id": PydanticObjectId(transaction_id), "status": HELD},
        {"$set": {"expires_at": datetime.utcnow() + timedelta(seconds=ttl_seconds)}},
    )
    return res.modified_count == 1


async def commit(transaction_id: str) -> bool:
    """Make a held reservation permanent. Returns False if it was already refunded."""
    if not await _set_status(transaction_id, (HELD,), COMMITTED):
        txn = await get_transaction(transaction_id)
        if txn.status != COMMITTED:
            log.warning("credits_commit_skipped", transaction_id=transaction_id, status=txn.status)
            return False
        await _settle(txn)
        return True
    txn = await get_transaction(transaction_id)
    await _settle(txn)
    log.info("credits_committed", transaction_id=transaction_id, amount=txn.amount, owner_id=txn.owner_id)
    return True


async def refund(transaction_id: str, reason: str = "") -> bool:
    """
    Return held credits to the owner.

    True only for the call that performed the refund; a repeated refund, or a
    refund of a committed transaction, is a no-op returning False.
    """
    if not await _set_status(transaction_id, (PENDING, HELD), REFUNDED, failure_reason=reason[:500] or None):
        txn = await get_transaction(transaction_id)
        if txn.status == REFUNDED:
            await _settle(txn)
        else:
            log.warning("credits_refund_skipped", transaction_id=transaction_id, status=txn.status)
        return False
    txn = await get_transaction(transaction_id)
    settled = await _settle(txn)
    log.info(
        "credits_refunded",
        transaction_id=transaction_id,
        amount=txn.amount,
        owner_id=txn.owner_id,
        reason=reason,
        applied=settled,
    )
    return True


async def grant(
    owner: CreditOwner,
    amount: float,
    reason: str,
    idempotency_key: str,
    *,
    reference_type: str | None = None,
    reference_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    payment_history: dict[str, Any] | None = None,
) -> tuple[CreditTransaction, bool]:
    """
    Add credits exactly once per idempotency key.

    Returns (transaction, applied); applied is False when the key was already
    granted or is being granted by a concurrent caller.
    """
    amount = validate_credit_amount(amount)
    existing = await _find_by_key(owner, idempotency_key)
    if existing:
        if existing.kind != "grant":
            raise ConflictError("Idempotency key already used for a different operation")
        if existing.status == COMMITTED:
            return existing, False
        txn = existing
    else:
        txn = CreditTransaction(
            owner_type=owner.owner_type,
            owner_id=owner.owner_id,
            kind="grant",
            amount=amount,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            metadata={**(metadata or {}), **({"payment_history": payment_history} if payment_history else {})},
            status=PENDING,
        )
        try:
            await txn.insert()
        except DuplicateKeyError:
            txn = await _find_by_key(owner, idempotency_key)
            if txn is None:
                raise
            if txn.status == COMMITTED:
                return txn, False
    applied = await _apply_grant(txn, claim_from=(PENDING,))
    return txn, applied


async def _apply_grant(txn: CreditTransaction, claim_from: tuple[str, ...]) -> bool:
    tid = str(txn.id)
    if not await _set_status(tid, claim_from, APPLYING):
        return False
    owner = CreditOwner(txn.owner_type, txn.owner_id)
    update: dict[str, Any] = {
        "$inc": {"credits": txn.amount, EARNED_FIELD[owner.owner_type]: txn.amount},
        "$push": {"pending_reservations": tid},
        "$set": {"updated_at": datetime.utcnow()},
    }
    history = txn.metadata.get("payment_history")
    if history and owner.owner_type == "user":
        update["$push"]["payment_history"] = {"$each": [history], "$slice": -PAYMENT_HISTORY_LIMIT}
    doc = await owner.collection().find_one_and_update(
        {"_id": owner.object_id, "pending_reservations": {"$ne": tid}},
        update,
        projection={"credits": 1},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None and await owner.collection().count_documents({"_id": owner.object_id}) == 0:
        await _set_status(tid, (APPLYING,), REJECTED, failure_reason="owner_not_found")
        raise NotFoundError(f"{owner.owner_type} not found")
    await _normalize(owner, doc)
    await _set_status(tid, (APPLYING,), COMMITTED)
    txn.status = COMMITTED
    await _settle(txn)
    log.info(
        "credits_granted",
        owner_type=owner.owner_type,
        owner_id=owner.owner_id,
        transaction_id=tid,
        amount=txn.amount,
        reason=txn.reason,
    )
    return doc is not None


@asynccontextmanager
async def reserved(
    owner: CreditOwner,
    amount: float,
    reason: str,
    **kwargs: Any,
) -> AsyncIterator[CreditTransaction]:
    """Hold credits for the body of the block: commit on normal exit, refund on any exception."""
    txn = await reserve(owner, amount, reason, **kwargs)
    tid = str(txn.id)
    try:
        yield txn
    except BaseException as e:
        await refund(tid, reason=f"{type(e).__name__}: {e}")
        raise
    await commit(tid)


async def sweep_stale(now: datetime | None = None, batch_size: int | None = None) -> dict[str, int]:
    """
    Reconcile transactions a crashed or abandoned request left behind.

    Settles final transactions still listed on their owner, refunds expired debits
    and rolls stale grants forward. Safe to run concurrently with live traffic.
    """
    now = now or datetime.utcnow()
    batch_size = batch_size or get_settings().sweep_batch_size
    counts = {"settled": 0, "refunded": 0, "granted": 0}

    expired_debits = (
        await CreditTransaction.find(
            {"kind": "debit", "status": {"$in": [PENDING, HELD]}, "expires_at": {"$lt": now}}
        )
        .limit(batch_size)
        .to_list()
    )
    for txn in expired_debits:
        if await refund(str(txn.id), reason="reservation_expired"):
            counts["refunded"] += 1

    grant_cutoff = now - timedelta(seconds=GRANT_STALE_SECONDS)
    stale_grants = (
        await CreditTransaction.find(
            {"kind": "grant", "status": {"$in": [PENDING, APPLYING]}, "updated_at": {"$lt": grant_cutoff}}
        )
        .limit(batch_size)
        .to_list()
    )
    for txn in stale_grants:
        try:
            if await _apply_grant(txn, claim_from=(PENDING, APPLYING)):
                counts["granted"] += 1
        except NotFoundError:
            log.warning("sweep_grant_owner_missing", transaction_id=str(txn.id))

    for owner_type, model in OWNER_MODELS.items():
        cursor = model.get_motor_collection().find(
            {"pending_reservations.0": {"$exists": True}}, {"pending_reservations": 1}
        ).limit(batch_size)
        async for doc in cursor:
            for tid in doc.get("pending_reservations", []):
                txn = await CreditTransaction.get(PydanticObjectId(tid))
                if txn is None:
                    log.error("sweep_orphan_reservation", owner_type=owner_type, owner_id=str(doc["_id"]), transaction_id=tid)
                    continue
                if txn.status in (COMMITTED, REFUNDED) and await _settle(txn):
                    counts["settled"] += 1

    if any(counts.values()):
        log.info("credits_swept", **counts)
    return counts
