import httpx
import pytest

from app.core.exceptions import GatewayTimeoutError
from app.services.fal import FalClient, FalError, FalJobFailed, PollPolicy, app_id, poll_until_done

FAST = PollPolicy(interval=0, timeout=5)


async def test_poll_returns_result_when_completed(fake_fal):
    fake_fal.statuses = [{"status": "IN_QUEUE"}, {"status": "IN_PROGRESS"}, {"status": "COMPLETED"}]
    out = await poll_until_done(fake_fal, "fal-ai/veo3.1", "req-1", FAST)
    assert out == fake_fal.result_output
    assert [c[0] for c in fake_fal.calls] == ["status", "status", "status", "result"]


async def test_poll_raises_on_failed_job(fake_fal):
    fake_fal.statuses = [{"status": "FAILED", "error": "nsfw"}]
    with pytest.raises(FalJobFailed) as exc:
        await poll_until_done(fake_fal, "fal-ai/veo3.1", "req-1", FAST)
    assert exc.value.request_id == "req-1"
    assert exc.value.detail == "nsfw"


async def test_poll_times_out(fake_fal):
    fake_fal.statuses = [{"status": "IN_PROGRESS"}]
    with pytest.raises(GatewayTimeoutError) as exc:
        await poll_until_done(fake_fal, "fal-ai/veo3.1", "req-1", PollPolicy(interval=0, timeout=0))
    assert exc.value.status_code == 504
    assert exc.value.details["request_id"] == "req-1"


async def test_poll_retries_transient_status_errors(fake_fal):
    calls = {"n": 0}
    original = fake_fal.status

    async def flaky_status(model, request_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise FalError("bad gateway", 502)
        return await original(model, request_id)

    fake_fal.status = flaky_status
    out = await poll_until_done(fake_fal, "fal-ai/veo3.1", "req-1", FAST)
    assert out == fake_fal.result_output


async def test_poll_gives_up_on_client_errors(fake_fal):
    async def not_found(model, request_id):
        raise FalError("not found", 404)

    fake_fal.status = not_found
    with pytest.raises(FalError):
        await poll_until_done(fake_fal, "fal-ai/veo3.1", "req-1", FAST)


def test_app_id_drops_sub_path():
    assert app_id("fal-ai/veo3.1/fast/image-to-video") == "fal-ai/veo3.1"
    assert app_id("CassetteAI/music-generator") == "CassetteAI/music-generator"


async def test_client_uses_queue_urls_and_key_header():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url), request.headers.get("Authorization")))
        if request.method == "POST":
            return httpx.Response(200, json={"request_id": "abc"})
        return httpx.Response(200, json={"status": "COMPLETED"})

    client = FalClient(api_key="k1", http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    submitted = await client.submit("fal-ai/veo3.1/fast/image-to-video", {"prompt": "x"})
    status = await client.status("fal-ai/veo3.1/fast/image-to-video", "abc")
    await client.close()
    assert submitted["request_id"] == "abc"
    assert status["status"] == "COMPLETED"
    assert seen[0] == ("POST", "https://queue.fal.run/fal-ai/veo3.1/fast/image-to-video", "Key k1")
    assert seen[1][1] == "https://queue.fal.run/fal-ai/veo3.1/requests/abc/status"


async def test_client_maps_http_errors():
    client = FalClient(
        api_key="k1", http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(422, text="bad")))
    )
    with pytest.raises(FalError) as exc:
        await client.run("fal-ai/flux-2", {"prompt": "x"})
    await client.close()
    assert exc.value.status_code == 422
    assert not exc.value.retryable
