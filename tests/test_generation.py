from types import SimpleNamespace

import pytest

from app.core.exceptions import (
    BadRequestError,
    ConflictError,
    GatewayTimeoutError,
    ServiceUnavailableError,
    UpstreamError,
)
from app.services import credits as credits_service
from app.services import generation
from app.services.credits import CreditOwner
from app.services.fal import FalError, PollPolicy
from app.services.generation import JobSpec, run_paid_job, submit_paid_job

OWNER = CreditOwner("user", "64b000000000000000000001")


class Ledger:
    """Records credit calls made by the generation service."""

    def __init__(self, replay: bool = False) -> None:
        self.replay = replay
        self.reserved: list[float] = []
        self.committed: list[str] = []
        self.refunded: list[str] = []
        self.recorded: list[str | None] = []

    def install(self, monkeypatch) -> "Ledger":
        async def reserve_once(owner, amount, reason, **kwargs):
            self.reserved.append(amount)
            status = "committed" if self.replay else "held"
            return SimpleNamespace(id="t1", amount=amount, status=status), not self.replay

        async def commit(tid):
            self.committed.append(tid)
            return True

        async def refund(tid, reason=""):
            self.refunded.append(tid)
            return True

        async def get_balance(owner):
            return 7.5

        async def record_generation(owner, spec, request_id):
            self.recorded.append(request_id)

        monkeypatch.setattr(credits_service, "reserve_once", reserve_once)
        monkeypatch.setattr(credits_service, "commit", commit)
        monkeypatch.setattr(credits_service, "refund", refund)
        monkeypatch.setattr(credits_service, "get_balance", get_balance)
        monkeypatch.setattr(generation, "record_generation", record_generation)
        return self


def queue_spec(timeout: float = 5) -> JobSpec:
    return JobSpec(
        kind="video",
        model="fal-ai/veo3.1",
        payload={"prompt": "waves"},
        credits=22,
        mode="queue",
        poll=PollPolicy(interval=0, timeout=timeout),
    )


SYNC_SPEC = JobSpec(kind="image", model="fal-ai/flux-2", payload={"prompt": "a cat"}, credits=0.5, mode="sync")


async def test_success_commits_once(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    outcome = await run_paid_job(fake_fal, OWNER, queue_spec())
    assert outcome.output == fake_fal.result_output
    assert outcome.request_id == "req-123"
    assert outcome.credits_charged == 22
    assert outcome.remaining_credits == 7.5
    assert ledger.committed == ["t1"]
    assert ledger.refunded == []
    assert ledger.recorded == ["req-123"]
    body = outcome.as_response()
    assert body["success"] is True
    assert body["remaining_credits"] == 7.5


async def test_sync_job_runs_directly(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    outcome = await run_paid_job(fake_fal, OWNER, SYNC_SPEC)
    assert outcome.output == fake_fal.run_output
    assert fake_fal.calls == [("run", "fal-ai/flux-2")]
    assert ledger.reserved == [0.5]


async def test_failed_job_refunds(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    fake_fal.statuses = [{"status": "FAILED", "error": "nsfw"}]
    with pytest.raises(UpstreamError) as exc:
        await run_paid_job(fake_fal, OWNER, queue_spec())
    assert exc.value.details["credits_refunded"] == 22
    assert exc.value.details["request_id"] == "req-123"
    assert ledger.refunded == ["t1"]
    assert ledger.committed == []


async def test_timeout_refunds_and_keeps_504(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    fake_fal.statuses = [{"status": "IN_PROGRESS"}]
    with pytest.raises(GatewayTimeoutError) as exc:
        await run_paid_job(fake_fal, OWNER, queue_spec(timeout=0))
    assert exc.value.details["credits_refunded"] == 22
    assert ledger.refunded == ["t1"]
    assert ledger.committed == []


async def test_provider_rejection_refunds(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    fake_fal.run_error = FalError("bad input", 422)
    with pytest.raises(UpstreamError) as exc:
        await run_paid_job(fake_fal, OWNER, SYNC_SPEC)
    assert exc.value.details["credits_refunded"] == 0.5
    assert ledger.refunded == ["t1"]


async def test_replayed_idempotency_key_conflicts(monkeypatch, fake_fal):
    ledger = Ledger(replay=True).install(monkeypatch)
    with pytest.raises(ConflictError):
        await run_paid_job(fake_fal, OWNER, SYNC_SPEC, idempotency_key="same-key")
    assert fake_fal.calls == []
    assert ledger.committed == []


async def test_without_owner_no_credits_move(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    outcome = await run_paid_job(fake_fal, None, SYNC_SPEC)
    assert outcome.credits_charged == 0.0
    assert outcome.remaining_credits is None
    assert "remaining_credits" not in outcome.as_response()
    assert ledger.reserved == []


async def test_unconfigured_client(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    fake_fal.configured = False
    with pytest.raises(ServiceUnavailableError):
        await run_paid_job(fake_fal, OWNER, SYNC_SPEC)
    assert ledger.reserved == []


async def test_submit_keeps_hold_open(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    request_id, txn = await submit_paid_job(fake_fal, OWNER, queue_spec())
    assert request_id == "req-123"
    assert txn.status == "held"
    assert ledger.committed == []
    assert ledger.refunded == []


async def test_submit_failure_refunds(monkeypatch, fake_fal):
    ledger = Ledger().install(monkeypatch)
    fake_fal.submit_error = FalError("queue full", 429)
    with pytest.raises(UpstreamError):
        await submit_paid_job(fake_fal, OWNER, queue_spec())
    assert ledger.refunded == ["t1"]


def test_check_media_urls():
    generation.check_media_urls("https://cdn.example.com/a.png", None, "")
    with pytest.raises(BadRequestError):
        generation.check_media_urls("https://cdn.example.com/a.png", "http://10.0.0.1/x.png")
