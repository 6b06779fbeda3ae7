from types import SimpleNamespace

import pytest

from app.deps import get_credit_payer
from app.main import app
from app.services.fal import get_fal_client
from app.services.gateway import Payer
from app.services.generation import JobOutcome

USER = SimpleNamespace(id="64b000000000000000000001")


@pytest.fixture
def jobs(monkeypatch, fake_fal):
    """Authenticated session payer; captures the JobSpec each route builds."""
    captured = []

    async def fake_run(client, owner, spec, *, idempotency_key=None):
        captured.append({"owner": owner, "spec": spec, "idempotency_key": idempotency_key})
        return JobOutcome(output={"ok": True}, request_id="req-1", credits_charged=spec.credits, remaining_credits=10.0)

    app.dependency_overrides[get_credit_payer] = lambda: Payer(kind="user", user=USER)
    app.dependency_overrides[get_fal_client] = lambda: fake_fal
    monkeypatch.setattr("app.routers.generate.run_paid_job", fake_run)
    monkeypatch.setattr("app.routers.audio.run_paid_job", fake_run)
    return captured


async def test_image_text_to_image(client, jobs):
    r = await client.post("/v1/generate/image", json={"prompt": "a cat"}, headers={"Idempotency-Key": "k1"})
    assert r.status_code == 200
    assert r.json()["credits_charged"] == 0.5
    job = jobs[0]
    assert job["spec"].model == "fal-ai/flux-pro/kontext/text-to-image"
    assert job["spec"].mode == "sync"
    assert job["owner"].owner_id == USER.id
    assert job["idempotency_key"] == "k1"


@pytest.mark.parametrize(
    "body,model",
    [
        ({"image_url": "https://cdn.example.com/a.png"}, "fal-ai/flux-pro/kontext/max"),
        (
            {"image_urls": ["https://cdn.example.com/a.png", "https://cdn.example.com/b.png"]},
            "fal-ai/flux-pro/kontext/max/multi",
        ),
        ({"model": "nano-banana-pro"}, "fal-ai/nano-banana-pro"),
        ({"model": "flux-2", "image_url": "https://cdn.example.com/a.png"}, "fal-ai/flux-2/edit"),
    ],
)
async def test_image_endpoint_selection(client, jobs, body, model):
    r = await client.post("/v1/generate/image", json={"prompt": "a cat", **body})
    assert r.status_code == 200
    assert jobs[0]["spec"].model == model


async def test_qwen_layered_requires_image(client, jobs):
    r = await client.post("/v1/generate/image", json={"prompt": "a cat", "model": "qwen-image-layered"})
    assert r.status_code == 400
    assert jobs == []


async def test_image_rejects_private_media_url(client, jobs):
    r = await client.post("/v1/generate/image", json={"prompt": "a cat", "image_url": "http://localhost/a.png"})
    assert r.status_code == 400
    assert jobs == []


async def test_video_modes(client, jobs):
    r = await client.post(
        "/v1/generate/video",
        json={"prompt": "waves", "generation_mode": "text-to-video", "generate_audio": False, "quality": "quality"},
    )
    assert r.status_code == 200
    spec = jobs[0]["spec"]
    assert spec.model == "fal-ai/veo3.1"
    assert spec.mode == "queue"
    assert spec.credits == 22
    assert spec.poll.timeout == 600


async def test_video_image_modes_need_frames(client, jobs):
    r = await client.post("/v1/generate/video", json={"prompt": "waves", "generation_mode": "image-to-video"})
    assert r.status_code == 400
    r = await client.post(
        "/v1/generate/video",
        json={
            "prompt": "waves",
            "generation_mode": "first-last-frame",
            "first_frame_url": "https://cdn.example.com/a.png",
        },
    )
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "last_frame_url is required for first-last-frame"
    assert jobs == []


async def test_music_price_and_bounds(client, jobs):
    r = await client.post("/v1/generate/music", json={"prompt": "lofi", "duration": 60})
    assert r.status_code == 200
    assert jobs[0]["spec"].credits == 1.0
    r = await client.post("/v1/generate/music", json={"prompt": "lofi", "duration": 999})
    assert r.status_code == 422


async def test_voice_clone(client, jobs):
    r = await client.post(
        "/v1/audio/voice-clone",
        json={"text": "hello there", "voice_url": "https://cdn.example.com/voice.wav"},
    )
    assert r.status_code == 200
    spec = jobs[0]["spec"]
    assert spec.model == "fal-ai/xtts-v2"
    assert spec.payload["audio_url"] == "https://cdn.example.com/voice.wav"
    assert spec.credits == 1.0


async def test_voice_clone_text_limit(client, jobs):
    r = await client.post("/v1/audio/voice-clone", json={"text": "x" * 5001})
    assert r.status_code == 422


async def test_generation_requires_auth(client):
    r = await client.post("/v1/generate/music", json={"prompt": "lofi"})
    assert r.status_code == 401
