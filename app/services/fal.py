"""fal.ai client: sync runs, queue submit/status/result, and the shared polling loop."""

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from app.core.config import get_settings
from app.core.exceptions import GatewayTimeoutError, ServiceUnavailableError
from app.core.logging import get_logger

log = get_logger(__name__)

COMPLETED_STATUSES = frozenset({"COMPLETED", "OK", "SUCCEEDED"})
FAILED_STATUSES = frozenset({"FAILED", "ERROR", "CANCELLED"})


class FalError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class FalJobFailed(FalError):
    def __init__(self, request_id: str, status: str, detail: Any = None) -> None:
        super().__init__(f"Job {request_id} finished with status {status}")
        self.request_id = request_id
        self.status = status
        self.detail = detail


@dataclass(frozen=True)
class PollPolicy:
    interval: float  # seconds between status checks
    timeout: float  # seconds before giving up with 504


DEFAULT_POLL = PollPolicy(interval=3.0, timeout=300.0)


def is_completed(status: str | None) -> bool:
    return (status or "").upper() in COMPLETED_STATUSES


def is_failed(status: str | None) -> bool:
    return (status or "").upper() in FAILED_STATUSES


def app_id(model: str) -> str:
    """Queue status/result URLs use the owner/app prefix, without the sub-path."""
    parts = [p for p in model.split("/") if p]
    return "/".join(parts[:2])


class QueueClient(Protocol):
    async def status(self, model: str, request_id: str) -> dict[str, Any]: ...

    async def result(self, model: str, request_id: str) -> dict[str, Any]: ...


class FalClient:
    def __init__(self, api_key: str | None = None, http: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self.api_key = settings.fal_api_key if api_key is None else api_key
        self.queue_url = settings.fal_queue_url.rstrip("/")
        self.run_url = settings.fal_run_url.rstrip("/")
        self._client = http or httpx.AsyncClient(timeout=settings.fal_http_timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ServiceUnavailableError("AI service not configured")
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = self._headers()
        try:
            resp = await self._client.request(method, url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise FalError(f"fal request failed: {e}") from e
        if resp.status_code >= 400:
            raise FalError(f"fal {method} error {resp.status_code}: {resp.text[:500]}", resp.status_code)
        if not resp.content:
            return {}
        data = resp.json()
        return data if isinstance(data, dict) else {"data": data}

    async def run(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Synchronous endpoint; returns the model output directly."""
        return await self._request("POST", f"{self.run_url}/{model}", payload)

    async def submit(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", f"{self.queue_url}/{model}", payload)
        if not data.get("request_id"):
            raise FalError("No request_id returned from queue submission")
        log.info("fal_submitted", model=model, request_id=data["request_id"])
        return data

    async def status(self, model: str, request_id: str) -> dict[str, Any]:
        return await self._request("GET", f"{self.queue_url}/{app_id(model)}/requests/{request_id}/status")

    async def result(self, model: str, request_id: str) -> dict[str, Any]:
        return await self._request("GET", f"{self.queue_url}/{app_id(model)}/requests/{request_id}")


async def poll_until_done(
    client: QueueClient,
    model: str,
    request_id: str,
    policy: PollPolicy = DEFAULT_POLL,
) -> dict[str, Any]:
    """
    Wait for a queued job and return its result.

    Raises FalJobFailed when the provider reports failure and GatewayTimeoutError
    once `policy.timeout` elapses. Transient status-check errors are retried until
    the deadline.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + policy.timeout
    polls = 0
    while True:
        await asyncio.sleep(policy.interval)
        polls += 1
        try:
            status = await client.status(model, request_id)
        except FalError as e:
            if not e.retryable:
                raise
            log.warning("fal_status_retry", model=model, request_id=request_id, error=str(e))
            status = {}
        state = str(status.get("status") or "").upper()
        if state in COMPLETED_STATUSES:
            log.info("fal_completed", model=model, request_id=request_id, polls=polls)
            return await client.result(model, request_id)
        if state in FAILED_STATUSES:
            log.warning("fal_failed", model=model, request_id=request_id, status=state)
            raise FalJobFailed(request_id, state, status.get("error") or status.get("logs"))
        if loop.time() >= deadline:
            log.warning("fal_timeout", model=model, request_id=request_id, polls=polls, timeout=policy.timeout)
            raise GatewayTimeoutError(
                f"Timed out after {int(policy.timeout)}s waiting for {model}",
                details={"request_id": request_id, "timeout_seconds": policy.timeout},
            )


_shared: FalClient | None = None


def get_fal_client() -> FalClient:
    """FastAPI dependency; one pooled client per process."""
    global _shared
    if _shared is None:
        _shared = FalClient()
    return _shared


async def close_fal_client() -> None:
    global _shared
    if _shared is not None:
        await _shared.close()
        _shared = None
