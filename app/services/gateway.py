"""
Agentic gateway: invoke catalog tools, track queued jobs and run workflows.

Every call is paid by exactly one of: an API key's balance, the session user's
balance, or an x402 payment verified before the call and settled after it.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from beanie import PydanticObjectId
from pymongo import ReturnDocument

from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    BadRequestError,
    NotFoundError,
    ServiceUnavailableError,
    UnauthorizedError,
    UpstreamError,
)
from app.core.logging import get_logger
from app.models.api_key import ApiKey
from app.models.gateway_job import GatewayJob
from app.models.user import User
from app.services import api_keys as api_keys_service
from app.services import credits as credits_service
from app.services import orchestrator, x402
from app.services.credits import CreditOwner
from app.services.fal import FalClient, FalError, is_completed, is_failed
from app.services.generation import JobSpec, run_paid_job, submit_paid_job
from app.services.tool_registry import ToolDefinition, get_registry
from app.services.x402 import X402Payment

log = get_logger(__name__)

IN_QUEUE = "IN_QUEUE"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
EXPIRED = "EXPIRED"

JOBS_PATH = "/v1/gateway/jobs"


@dataclass
class Payer:
    kind: Literal["api_key", "user", "x402"]
    api_key: ApiKey | None = None
    user: User | None = None
    x402: X402Payment | None = None

    @property
    def owner(self) -> CreditOwner | None:
        if self.api_key is not None:
            return CreditOwner.for_api_key(self.api_key)
        if self.user is not None:
            return CreditOwner.for_user(self.user)
        return None


def get_enabled_tool(tool_id: str) -> ToolDefinition:
    tool = get_registry().get(tool_id)
    if tool is None:
        raise NotFoundError(f"Tool not found: {tool_id}")
    if not tool.enabled:
        raise ServiceUnavailableError(f"Tool is currently disabled: {tool_id}")
    return tool


def validate_tool_input(tool: ToolDefinition, data: dict[str, Any]) -> None:
    ok, errors = get_registry().validate_input(tool.id, data)
    if not ok:
        raise BadRequestError(
            "Invalid input",
            details={"errors": errors, "schema": tool.input_schema.model_dump(exclude_none=True)},
        )


def _job_links(request_id: str, model: str) -> dict[str, str]:
    return {
        "status_url": f"{JOBS_PATH}/{request_id}?model={model}",
        "result_url": f"{JOBS_PATH}/{request_id}/result?model={model}",
    }


def _spec_for(tool: ToolDefinition, data: dict[str, Any]) -> JobSpec:
    price = get_registry().calculate_price(tool.id, data)
    return JobSpec(
        kind="tool",
        model=tool.fal_model,
        payload=data,
        credits=price.credits if price else tool.pricing.credits,
        mode=tool.execution_mode,
        poll=tool.poll,
        reason="gateway",
        label=tool.id,
    )


async def invoke(
    client: FalClient,
    tool: ToolDefinition,
    data: dict[str, Any],
    payer: Payer,
    *,
    idempotency_key: str | None = None,
) -> dict[str, Any]:
    """
    Run a sync tool, or queue a queue tool and hold its credits until the job finishes.

    x402 payments are settled by the caller once this returns, so for them a
    queue tool is also run to completion here.
    """
    validate_tool_input(tool, data)
    if payer.api_key is not None:
        api_keys_service.check_tool_access(payer.api_key, tool)
    spec = _spec_for(tool, data)
    owner = payer.owner

    if tool.execution_mode == "sync" or payer.kind == "x402":
        outcome = await run_paid_job(client, owner, spec, idempotency_key=idempotency_key)
        body = {"tool_id": tool.id, "mode": "sync", **outcome.as_response()}
    else:
        request_id, txn = await submit_paid_job(client, owner, spec, idempotency_key=idempotency_key)
        await GatewayJob(
            request_id=request_id,
            tool_id=tool.id,
            model=tool.fal_model,
            owner_type=owner.owner_type if owner else None,
            owner_id=owner.owner_id if owner else None,
            transaction_id=str(txn.id) if txn else None,
            credits=txn.amount if txn else 0.0,
        ).insert()
        log.info("gateway_job_queued", tool_id=tool.id, request_id=request_id, credits=spec.credits)
        body = {
            "success": True,
            "tool_id": tool.id,
            "mode": "queue",
            "job": {"id": request_id, "model": tool.fal_model, "status": IN_QUEUE, **_job_links(request_id, tool.fal_model)},
            "credits_reserved": txn.amount if txn else 0.0,
        }

    if payer.api_key is not None:
        await api_keys_service.record_usage(payer.api_key, tool.id)
    return body


async def _close_job(job: GatewayJob, status: str, error: str | None = None) -> bool:
    """Move an open job to a final status and settle its hold. Only one caller wins."""
    doc = await GatewayJob.get_motor_collection().find_one_and_update(
        {"_id": job.id, "status": IN_QUEUE},
        {"$set": {"status": status, "error": error, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        return False
    if job.transaction_id:
        if status == COMPLETED:
            await credits_service.commit(job.transaction_id)
        else:
            await credits_service.refund(job.transaction_id, reason=f"job_{status.lower()}: {error or ''}")
            if job.owner_type == "api_key" and job.owner_id:
                key = await ApiKey.get(PydanticObjectId(job.owner_id))
                if key is not None and not key.active:
                    # refunded after revocation
                    await api_keys_service.return_key_balance(key)
    log.info("gateway_job_closed", request_id=job.request_id, status=status, credits=job.credits)
    if job.owner_type == "api_key" and job.owner_id:
        await api_keys_service.notify_webhook(
            job.owner_id,
            f"job.{status.lower()}",
            {
                "request_id": job.request_id,
                "tool_id": job.tool_id,
                "status": status,
                "error": error,
                "credits": job.credits if status == COMPLETED else 0.0,
                "credits_refunded": 0.0 if status == COMPLETED else job.credits,
            },
        )
    return True


async def _find_job(request_id: str) -> GatewayJob | None:
    return await GatewayJob.find_one(GatewayJob.request_id == request_id)


async def job_status(client: FalClient, request_id: str, model: str | None = None) -> dict[str, Any]:
    job = await _find_job(request_id)
    model = job.model if job else model
    if not model:
        raise BadRequestError("Query parameter 'model' is required for unknown jobs")
    try:
        status = await client.status(model, request_id)
    except FalError as e:
        raise UpstreamError(f"Status check failed: {e}", details={"request_id": request_id}) from e
    state = str(status.get("status") or "").upper()
    body: dict[str, Any] = {"request_id": request_id, "model": model, "status": state}
    if "queue_position" in status:
        body["queue_position"] = status["queue_position"]
    if job is not None and job.status == IN_QUEUE:
        if is_completed(state):
            await _close_job(job, COMPLETED)
        elif is_failed(state):
            await _close_job(job, FAILED, error=str(status.get("error") or state))
            body["credits_refunded"] = job.credits
        elif job.transaction_id:
            # still running: keep the hold alive while the caller is polling
            await credits_service.extend_hold(job.transaction_id, get_settings().queue_job_ttl_seconds)
    if is_completed(state):
        body["result_url"] = _job_links(request_id, model)["result_url"]
    return body


async def job_result(client: FalClient, request_id: str, model: str | None = None) -> dict[str, Any]:
    status = await job_status(client, request_id, model)
    state = status["status"]
    if is_failed(state):
        raise UpstreamError(
            "Job failed",
            details={"request_id": request_id, "status": state, "credits_refunded": status.get("credits_refunded", 0.0)},
        )
    if not is_completed(state):
        return {"request_id": request_id, "status": state, "ready": False}
    try:
        output = await client.result(status["model"], request_id)
    except FalError as e:
        raise UpstreamError(f"Result fetch failed: {e}", details={"request_id": request_id}) from e
    return {"request_id": request_id, "status": state, "ready": True, "result": output}


async def reconcile_open_jobs(client: FalClient, limit: int = 100) -> dict[str, int]:
    """Settle queued jobs nobody polled: commit finished ones, refund failed or abandoned ones."""
    counts = {"completed": 0, "failed": 0, "expired": 0}
    ttl = timedelta(seconds=get_settings().queue_job_ttl_seconds)
    now = datetime.utcnow()
    jobs = await GatewayJob.find(GatewayJob.status == IN_QUEUE).sort(+GatewayJob.created_at).limit(limit).to_list()
    for job in jobs:
        try:
            status = await client.status(job.model, job.request_id)
        except FalError as e:
            log.warning("gateway_reconcile_status_failed", request_id=job.request_id, error=str(e))
            status = {}
        state = str(status.get("status") or "").upper()
        if is_completed(state):
            if await _close_job(job, COMPLETED):
                counts["completed"] += 1
        elif is_failed(state):
            if await _close_job(job, FAILED, error=state):
                counts["failed"] += 1
        elif now - job.created_at > ttl:
            if await _close_job(job, EXPIRED, error="job_ttl_exceeded"):
                counts["expired"] += 1
    return counts


def _error_item(e: AppError) -> dict[str, Any]:
    return {"message": e.message, "code": e.code, "details": e.details}


async def batch(client: FalClient, items: list[dict[str, Any]], payer: Payer) -> dict[str, Any]:
    limit = get_settings().gateway_batch_limit
    if not items:
        raise BadRequestError("Batch must contain at least one request")
    if len(items) > limit:
        raise BadRequestError(f"Batch is limited to {limit} requests", details={"limit": limit})
    if payer.owner is None:
        raise UnauthorizedError("Batch requests require an API key or session")

    async def one(index: int, item: dict[str, Any]) -> dict[str, Any]:
        tool_id = item.get("tool_id") or ""
        try:
            tool = get_enabled_tool(tool_id)
            result = await invoke(client, tool, item.get("input") or {}, payer)
        except AppError as e:
            return {"index": index, "tool_id": tool_id, "success": False, "error": _error_item(e)}
        return {"index": index, "tool_id": tool_id, **result}

    results = await asyncio.gather(*(one(i, item) for i, item in enumerate(items)))
    succeeded = sum(1 for r in results if r.get("success"))
    log.info("gateway_batch_finished", total=len(results), succeeded=succeeded)
    return {"success": succeeded == len(results), "total": len(results), "succeeded": succeeded, "results": results}


def step_executor(client: FalClient, payer: Payer) -> orchestrator.StepExecutor:
    """Each workflow step is charged on its own: reserved, run to completion, committed or refunded."""
    owner = payer.owner
    if owner is None:
        raise UnauthorizedError("Workflows require an API key or session")

    async def execute(tool: ToolDefinition, data: dict[str, Any]) -> Any:
        if not tool.enabled:
            raise ServiceUnavailableError(f"Tool is currently disabled: {tool.id}")
        validate_tool_input(tool, data)
        if payer.api_key is not None:
            api_keys_service.check_tool_access(payer.api_key, tool)
        outcome = await run_paid_job(client, owner, _spec_for(tool, data))
        if payer.api_key is not None:
            await api_keys_service.record_usage(payer.api_key, tool.id)
        return outcome.output

    return execute


async def run_workflow(
    client: FalClient, workflow_id: str, params: dict[str, Any], payer: Payer
) -> orchestrator.OrchestrationResult:
    plan = orchestrator.build_workflow(workflow_id, params)
    return await orchestrator.execute_plan(plan, step_executor(client, payer))


async def orchestrate(
    client: FalClient, goal: str, context: dict[str, Any], payer: Payer
) -> orchestrator.OrchestrationResult:
    if not goal.strip():
        raise BadRequestError("Goal is required")
    plan = orchestrator.plan_for_goal(goal, context)
    return await orchestrator.execute_plan(plan, step_executor(client, payer))


async def invoke_with_x402(
    client: FalClient,
    facilitator: x402.FacilitatorClient,
    tool: ToolDefinition,
    data: dict[str, Any],
    header_value: str | None,
    resource: str,
) -> tuple[dict[str, Any], str]:
    """
    Pay-per-call path for callers without an account. The payment is verified
    before the provider call and settled only after the call succeeded.

    Returns (body, X-PAYMENT-RESPONSE header value).
    """
    if not get_settings().x402_enabled:
        raise UnauthorizedError("Authentication required: API key or session")
    validate_tool_input(tool, data)
    requirements = x402.build_requirements(tool, data, resource)
    payment = await x402.require_payment(facilitator, header_value, requirements)
    body = await invoke(client, tool, data, Payer(kind="x402", x402=payment))
    settlement = await facilitator.settle(payment)
    await x402.record_settlement(payment, tool.id)
    body["payment"] = {"transaction": payment.transaction, "payer": payment.payer, "network": requirements["network"]}
    return body, x402.encode_settlement(settlement)
