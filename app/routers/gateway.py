from typing import Any

import orjson
from fastapi import APIRouter, Depends, Header, Query, Request, Response
from pydantic import BaseModel, Field

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, NotFoundError
from app.core.security import optional_idempotency_key
from app.deps import get_credit_payer, get_optional_payer
from app.services import gateway as gateway_service
from app.services import orchestrator
from app.services.fal import FalClient, get_fal_client
from app.services.gateway import Payer
from app.services.tool_registry import get_registry
from app.services.x402 import RESPONSE_HEADER, get_facilitator, payment_header

router = APIRouter()


class BatchItem(BaseModel):
    tool_id: str
    input: dict[str, Any] = Field(default_factory=dict)


class BatchRequest(BaseModel):
    requests: list[BatchItem]


class OrchestrateRequest(BaseModel):
    goal: str = Field(..., min_length=1, max_length=2000)
    context: dict[str, Any] = Field(default_factory=dict)


def _query_input(request: Request) -> dict[str, Any]:
    """Query strings arrive as text; numbers are converted so unit pricing sees them."""
    out: dict[str, Any] = {}
    for key, value in request.query_params.items():
        try:
            out[key] = int(value)
        except ValueError:
            try:
                out[key] = float(value)
            except ValueError:
                out[key] = value
    return out


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise BadRequestError("Request body must be valid JSON") from e
    if not isinstance(data, dict):
        raise BadRequestError("Request body must be a JSON object")
    return data


@router.get("/tools")
async def gateway_tools(category: str | None = None, q: str | None = None):
    """Enabled tools, optionally filtered by category and free-text query."""
    registry = get_registry()
    tools = registry.search(q) if q else registry.list_enabled()
    if category:
        tools = [t for t in tools if t.category == category]
    return {
        "tools": [t.public() for t in tools],
        "total": len(tools),
        "categories": registry.categories(),
    }


@router.get("/tools/{tool_id}")
async def gateway_tool(tool_id: str):
    tool = get_registry().get(tool_id)
    if tool is None:
        raise NotFoundError(f"Tool not found: {tool_id}")
    return tool.public()


@router.get("/price/{tool_id}")
async def gateway_price(tool_id: str, request: Request):
    """Price of one call with the query parameters as tool input."""
    registry = get_registry()
    params = _query_input(request)
    price = registry.calculate_price(tool_id, params)
    if price is None:
        raise NotFoundError(f"Tool not found: {tool_id}")
    settings = get_settings()
    out: dict[str, Any] = {"tool_id": tool_id, "credits": price.credits, "usd": price.usd}
    if settings.x402_enabled:
        x402_price = registry.calculate_price(tool_id, params, markup=settings.x402_markup)
        out["x402"] = {
            "usd": x402_price.usd,
            "usdc_units": x402_price.usdc_units,
            "network": settings.x402_network,
            "asset": settings.x402_asset,
        }
    return out


@router.get("/mcp-manifest")
async def gateway_mcp_manifest():
    settings = get_settings()
    return {
        "name": "genforge",
        "version": "1.0.0",
        "description": "AI image, video, audio, music and 3D generation tools",
        "tools": get_registry().to_mcp_tools(),
        "authentication": {
            "api_key": {"header": "X-API-Key"},
            "x402": {"enabled": settings.x402_enabled, "network": settings.x402_network},
        },
    }


@router.post("/invoke/{tool_id}")
async def gateway_invoke(
    tool_id: str,
    request: Request,
    response: Response,
    payer: Payer | None = Depends(get_optional_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """
    Invoke a catalog tool. The JSON body is the tool input.

    Paid from the API key or session balance when present; otherwise an
    x402 payment in X-PAYMENT is required (402 with the requirements if missing).
    """
    tool = gateway_service.get_enabled_tool(tool_id)
    data = await _json_body(request)
    if payer is not None:
        return await gateway_service.invoke(
            client, tool, data, payer, idempotency_key=optional_idempotency_key(idempotency_key)
        )
    body, settlement = await gateway_service.invoke_with_x402(
        client, get_facilitator(), tool, data, payment_header(request), str(request.url)
    )
    response.headers[RESPONSE_HEADER] = settlement
    return body


@router.get("/jobs/{request_id}")
async def gateway_job(
    request_id: str,
    model: str | None = Query(None),
    client: FalClient = Depends(get_fal_client),
):
    return await gateway_service.job_status(client, request_id, model)


@router.get("/jobs/{request_id}/result")
async def gateway_job_result(
    request_id: str,
    model: str | None = Query(None),
    client: FalClient = Depends(get_fal_client),
):
    return await gateway_service.job_result(client, request_id, model)


@router.post("/batch")
async def gateway_batch(
    body: BatchRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
):
    """Run up to the batch limit of tool calls concurrently; failures are reported per item."""
    items = [item.model_dump() for item in body.requests]
    return await gateway_service.batch(client, items, payer)


@router.get("/workflows")
async def gateway_workflows():
    return {"workflows": orchestrator.list_workflows()}


@router.post("/workflows/{workflow_id}")
async def gateway_run_workflow(
    workflow_id: str,
    params: dict[str, Any],
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
):
    result = await gateway_service.run_workflow(client, workflow_id, params, payer)
    return result.model_dump()


@router.post("/orchestrate")
async def gateway_orchestrate(
    body: OrchestrateRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
):
    """Match a free-text goal to a workflow template and run it."""
    result = await gateway_service.orchestrate(client, body.goal, body.context, payer)
    return result.model_dump()
