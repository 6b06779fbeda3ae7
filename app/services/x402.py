"""
x402 pay-per-call: build payment requirements for a tool call, then verify and
settle the client's signed USDC authorization through the facilitator.
"""

import base64
import binascii
import uuid
from dataclasses import dataclass
from typing import Any

import httpx
import orjson
from fastapi import Request

from app.core.config import get_settings
from app.core.exceptions import X402PaymentRequired
from app.core.logging import get_logger
from app.models.payment import Payment
from app.services.tool_registry import ToolDefinition, ToolRegistry, get_registry

log = get_logger(__name__)

X402_VERSION = 1
PAYMENT_HEADERS = ("X-PAYMENT", "PAYMENT-SIGNATURE")
RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


@dataclass
class X402Payment:
    payload: dict[str, Any]
    requirements: dict[str, Any]
    payer: str | None = None
    transaction: str | None = None


def payment_header(request: Request) -> str | None:
    for name in PAYMENT_HEADERS:
        value = request.headers.get(name)
        if value:
            return value
    return None


def decode_payment_header(value: str) -> dict[str, Any] | None:
    try:
        data = orjson.loads(base64.b64decode(value, validate=False))
    except (binascii.Error, ValueError):
        return None
    return data if isinstance(data, dict) else None


def encode_settlement(settlement: dict[str, Any]) -> str:
    return base64.b64encode(orjson.dumps(settlement)).decode()


def build_requirements(
    tool: ToolDefinition,
    params: dict[str, Any],
    resource: str,
    registry: ToolRegistry | None = None,
) -> dict[str, Any]:
    settings = get_settings()
    registry = registry or get_registry()
    price = registry.calculate_price(tool.id, params, markup=settings.x402_markup)
    timeout = settings.x402_max_timeout_seconds
    if tool.execution_mode == "queue":
        # settlement happens after the job finishes, so the authorization must outlive the poll
        timeout = max(timeout, int(tool.poll_timeout) + 60)
    return {
        "scheme": "exact",
        "network": settings.x402_network,
        "maxAmountRequired": price.usdc_units if price else "0",
        "resource": resource,
        "description": f"{tool.name}: {tool.description}",
        "mimeType": "application/json",
        "payTo": settings.x402_pay_to_address,
        "maxTimeoutSeconds": timeout,
        "asset": settings.x402_asset,
        "extra": {"name": "USD Coin", "version": "2", "tool_id": tool.id},
    }


def challenge(requirements: dict[str, Any], error: str = "X-PAYMENT header is required") -> dict[str, Any]:
    return {"x402Version": X402_VERSION, "accepts": [requirements], "error": error}


class FacilitatorClient:
    def __init__(self, url: str | None = None, http: httpx.AsyncClient | None = None) -> None:
        self.url = (url or get_settings().x402_facilitator_url).rstrip("/")
        self._client = http or httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any], requirements: dict[str, Any]) -> dict[str, Any]:
        body = {"x402Version": X402_VERSION, "paymentPayload": payload, "paymentRequirements": requirements}
        try:
            resp = await self._client.post(f"{self.url}/{path}", json=body)
        except httpx.HTTPError as e:
            log.warning("x402_facilitator_unreachable", path=path, error=str(e))
            raise X402PaymentRequired(challenge(requirements, "Payment facilitator unavailable")) from e
        if resp.status_code >= 400:
            log.warning("x402_facilitator_error", path=path, status_code=resp.status_code, body=resp.text[:300])
            raise X402PaymentRequired(challenge(requirements, f"Payment {path} failed"))
        return resp.json()

    async def verify(self, payload: dict[str, Any], requirements: dict[str, Any]) -> X402Payment:
        data = await self._post("verify", payload, requirements)
        if not data.get("isValid"):
            reason = data.get("invalidReason") or "invalid payment"
            log.info("x402_payment_invalid", reason=reason, payer=data.get("payer"))
            raise X402PaymentRequired(challenge(requirements, f"Payment verification failed: {reason}"))
        return X402Payment(payload=payload, requirements=requirements, payer=data.get("payer"))

    async def settle(self, payment: X402Payment) -> dict[str, Any]:
        data = await self._post("settle", payment.payload, payment.requirements)
        if not data.get("success"):
            reason = data.get("errorReason") or "settlement failed"
            log.warning("x402_settle_failed", reason=reason, payer=payment.payer)
            raise X402PaymentRequired(challenge(payment.requirements, f"Payment settlement failed: {reason}"))
        payment.transaction = data.get("transaction")
        payment.payer = data.get("payer") or payment.payer
        log.info("x402_settled", transaction=payment.transaction, payer=payment.payer)
        return data


async def require_payment(
    facilitator: FacilitatorClient, header_value: str | None, requirements: dict[str, Any]
) -> X402Payment:
    """Verify the client's payment for `requirements`, or answer 402 with the challenge."""
    if not header_value:
        raise X402PaymentRequired(challenge(requirements))
    payload = decode_payment_header(header_value)
    if payload is None:
        raise X402PaymentRequired(challenge(requirements, "Malformed X-PAYMENT header"))
    return await facilitator.verify(payload, requirements)


async def record_settlement(payment: X402Payment, tool_id: str) -> None:
    amount_usd = int(payment.requirements.get("maxAmountRequired") or 0) / 1_000_000
    await Payment(
        payment_id=payment.transaction or f"x402_{uuid.uuid4().hex}",
        type="x402",
        amount_usd=amount_usd,
        metadata={"payer": payment.payer, "tool_id": tool_id, "network": payment.requirements.get("network")},
    ).insert()


_facilitator: FacilitatorClient | None = None


def get_facilitator() -> FacilitatorClient:
    global _facilitator
    if _facilitator is None:
        _facilitator = FacilitatorClient()
    return _facilitator


async def close_facilitator() -> None:
    global _facilitator
    if _facilitator is not None:
        await _facilitator.close()
        _facilitator = None
