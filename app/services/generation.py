"""Paid provider jobs: reserve credits, run or poll the provider, then commit or refund."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from app.core.config import get_settings
from app.core.exceptions import AppError, ConflictError, ServiceUnavailableError, UpstreamError
from app.core.logging import get_logger
from app.core.security import validate_public_url
from app.models.credit_transaction import CreditTransaction
from app.models.user import GENERATION_HISTORY_LIMIT, GenerationHistoryEntry, User
from app.services import credits as credits_service
from app.services.credits import CreditOwner
from app.services.fal import DEFAULT_POLL, FalClient, FalError, FalJobFailed, PollPolicy, poll_until_done

log = get_logger(__name__)


@dataclass(frozen=True)
class JobSpec:
    kind: str  # image | video | music | audio | 3d | tool
    model: str
    payload: dict[str, Any]
    credits: float
    mode: Literal["sync", "queue"] = "queue"
    poll: PollPolicy = DEFAULT_POLL
    reason: str = "generation"
    label: str | None = None  # tool id or route name, for the ledger


@dataclass
class JobOutcome:
    output: dict[str, Any]
    request_id: str | None
    credits_charged: float
    remaining_credits: float | None
    transaction_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_response(self) -> dict[str, Any]:
        body = {
            "success": True,
            "request_id": self.request_id,
            "result": self.output,
            "credits_charged": self.credits_charged,
        }
        if self.remaining_credits is not None:
            body["remaining_credits"] = self.remaining_credits
        body.update(self.extra)
        return body


def check_media_urls(*urls: str | None) -> None:
    for url in urls:
        if url:
            validate_public_url(url, "media URL")


async def execute(client: FalClient, spec: JobSpec) -> tuple[dict[str, Any], str | None]:
    """Run a job to completion without touching credits. Returns (output, request_id)."""
    if spec.mode == "sync":
        return await client.run(spec.model, spec.payload), None
    submitted = await client.submit(spec.model, spec.payload)
    request_id = submitted["request_id"]
    output = await poll_until_done(client, spec.model, request_id, spec.poll)
    return output, request_id


def _provider_error(e: BaseException, details: dict[str, Any]) -> BaseException:
    """Map provider failures onto the API error envelope; anything else passes through."""
    if isinstance(e, AppError):
        e.details.update(details)
        return e
    if isinstance(e, FalJobFailed):
        return UpstreamError(f"Generation failed: {e}", details={**details, "request_id": e.request_id})
    if isinstance(e, FalError):
        return UpstreamError(f"Generation failed: {e}", details=details)
    return e


async def _refund_after(txn: CreditTransaction, spec: JobSpec, e: BaseException) -> BaseException:
    tid = str(txn.id)
    refunded = await credits_service.refund(tid, reason=f"{type(e).__name__}: {e}")
    details = {"credits_refunded": txn.amount if refunded else 0.0, "transaction_id": tid}
    log.warning(
        "generation_failed",
        kind=spec.kind,
        model=spec.model,
        error=str(e),
        credits_refunded=details["credits_refunded"],
    )
    return _provider_error(e, details)


async def _reserve_for(
    owner: CreditOwner, spec: JobSpec, idempotency_key: str | None, ttl_seconds: int | None
) -> CreditTransaction:
    txn, created = await credits_service.reserve_once(
        owner,
        spec.credits,
        spec.reason,
        idempotency_key=idempotency_key,
        reference_type=spec.kind,
        reference_id=spec.label or spec.model,
        metadata={"model": spec.model},
        ttl_seconds=ttl_seconds,
    )
    if not created:
        raise ConflictError(
            "A request with this Idempotency-Key was already processed",
            details={"transaction_id": str(txn.id), "status": txn.status},
        )
    return txn


async def run_paid_job(
    client: FalClient,
    owner: CreditOwner | None,
    spec: JobSpec,
    *,
    idempotency_key: str | None = None,
) -> JobOutcome:
    """
    Charge `owner` exactly `spec.credits` for one successful job.

    The hold is refunded on provider failure, timeout or cancellation, and the
    raised error carries `credits_refunded`. `owner=None` means the call was
    already paid another way (x402) and no credits move.
    """
    if not client.configured:
        raise ServiceUnavailableError("AI service not configured")

    if owner is None:
        try:
            output, request_id = await execute(client, spec)
        except BaseException as e:
            mapped = _provider_error(e, {})
            if mapped is e:
                raise
            raise mapped from e
        return JobOutcome(output=output, request_id=request_id, credits_charged=0.0, remaining_credits=None)

    ttl = int(spec.poll.timeout) + 300 if spec.mode == "queue" else None
    txn = await _reserve_for(owner, spec, idempotency_key, ttl)
    tid = str(txn.id)
    try:
        output, request_id = await execute(client, spec)
    except BaseException as e:
        mapped = await _refund_after(txn, spec, e)
        if mapped is e:
            raise
        raise mapped from e

    await credits_service.commit(tid)
    await record_generation(owner, spec, request_id)
    remaining = await credits_service.get_balance(owner)
    log.info(
        "generation_completed",
        kind=spec.kind,
        model=spec.model,
        request_id=request_id,
        credits=txn.amount,
        remaining=remaining,
    )
    return JobOutcome(
        output=output,
        request_id=request_id,
        credits_charged=txn.amount,
        remaining_credits=remaining,
        transaction_id=tid,
    )


async def submit_paid_job(
    client: FalClient,
    owner: CreditOwner | None,
    spec: JobSpec,
    *,
    idempotency_key: str | None = None,
    ttl_seconds: int | None = None,
) -> tuple[str, CreditTransaction | None]:
    """
    Reserve credits and queue the job without waiting for it.

    The hold stays open; whoever observes the job finish commits or refunds it,
    and the sweeper refunds it once `ttl_seconds` pass.
    """
    if not client.configured:
        raise ServiceUnavailableError("AI service not configured")
    txn = None
    if owner is not None:
        txn = await _reserve_for(owner, spec, idempotency_key, ttl_seconds or get_settings().queue_job_ttl_seconds)
    try:
        submitted = await client.submit(spec.model, spec.payload)
    except BaseException as e:
        mapped = await _refund_after(txn, spec, e) if txn else _provider_error(e, {})
        if mapped is e:
            raise
        raise mapped from e
    return submitted["request_id"], txn


async def record_generation(owner: CreditOwner, spec: JobSpec, request_id: str | None) -> None:
    if owner.owner_type != "user":
        return
    entry = GenerationHistoryEntry(
        kind=spec.kind,
        model=spec.model,
        request_id=request_id,
        credits=spec.credits,
    )
    await User.get_motor_collection().update_one(
        {"_id": owner.object_id},
        {
            "$push": {"generation_history": {"$each": [entry.model_dump()], "$slice": -GENERATION_HISTORY_LIMIT}},
            "$set": {"updated_at": datetime.utcnow()},
        },
    )
