from typing import Literal

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from app.core.exceptions import BadRequestError
from app.core.security import optional_idempotency_key
from app.deps import get_credit_payer
from app.services import gateway as gateway_service
from app.services import pricing
from app.services.fal import FalClient, PollPolicy, get_fal_client
from app.services.gateway import Payer
from app.services.generation import JobSpec, check_media_urls, run_paid_job

router = APIRouter()

VIDEO_POLL = PollPolicy(interval=5.0, timeout=600.0)
MUSIC_POLL = PollPolicy(interval=2.0, timeout=240.0)
MODEL_3D_POLL = PollPolicy(interval=5.0, timeout=420.0)
UPSCALE_POLL = PollPolicy(interval=2.0, timeout=180.0)
VIDEO_TO_AUDIO_POLL = PollPolicy(interval=3.0, timeout=300.0)

VIDEO_MODES = {
    "text-to-video": "fal-ai/veo3.1",
    "image-to-video": "fal-ai/veo3.1/fast/image-to-video",
    "first-last-frame": "fal-ai/veo3.1/fast/first-last-frame-to-video",
}


class ImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    model: str = "flux-pro-kontext"
    num_images: int = Field(1, ge=1, le=pricing.MAX_BATCH_IMAGES)
    image_url: str | None = None
    image_urls: list[str] = Field(default_factory=list)
    aspect_ratio: str | None = None
    guidance_scale: float = 7.5
    seed: int | None = None


class VideoRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    generation_mode: Literal["text-to-video", "image-to-video", "first-last-frame"] = "text-to-video"
    first_frame_url: str | None = None
    last_frame_url: str | None = None
    duration: str = "8s"
    aspect_ratio: str = "auto"
    resolution: str = "720p"
    generate_audio: bool = True
    quality: Literal["fast", "quality"] = "fast"


class MusicRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2000)
    duration: int = Field(30, ge=pricing.MUSIC_MIN_SECONDS, le=pricing.MUSIC_MAX_SECONDS)


class Model3dRequest(BaseModel):
    input_image_url: str
    generate_type: Literal["Normal", "LowPoly", "Geometry"] = "Normal"
    enable_pbr: bool = False


class UpscaleRequest(BaseModel):
    image_url: str
    scale: Literal[2, 4] = 2
    creativity: float = Field(0.35, ge=0, le=1)


class VideoToAudioRequest(BaseModel):
    video_url: str
    prompt: str = ""
    duration: float = Field(8, gt=0, le=30)


def image_model_path(model: str, image_url: str | None, image_urls: list[str]) -> str:
    """Pick the provider endpoint from the model name and how many reference images came in."""
    urls = [u for u in image_urls if u]
    multiple = len(urls) >= 2
    has_images = bool(image_url) or bool(urls)
    if model == "nano-banana-pro":
        return "fal-ai/nano-banana-pro/edit" if has_images else "fal-ai/nano-banana-pro"
    if model == "flux-2":
        return "fal-ai/flux-2/edit" if has_images else "fal-ai/flux-2"
    if model == "qwen-image-layered":
        if not has_images:
            raise BadRequestError("qwen-image-layered needs an input image")
        return "fal-ai/qwen-image-layered"
    if multiple:
        return "fal-ai/flux-pro/kontext/max/multi"
    if has_images:
        return "fal-ai/flux-pro/kontext/max"
    return "fal-ai/flux-pro/kontext/text-to-image"


async def _run(client: FalClient, payer: Payer, spec: JobSpec, idempotency_key: str | None) -> dict:
    outcome = await run_paid_job(
        client, payer.owner, spec, idempotency_key=optional_idempotency_key(idempotency_key)
    )
    return outcome.as_response()


@router.post("/image")
async def generate_image(
    body: ImageRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Text-to-image or image edit, run synchronously."""
    check_media_urls(body.image_url, *body.image_urls)
    model_path = image_model_path(body.model, body.image_url, body.image_urls)
    payload: dict = {"prompt": body.prompt.strip(), "num_images": body.num_images}
    urls = [u for u in body.image_urls if u]
    if body.image_url and not urls:
        urls = [body.image_url]
    if model_path.endswith("/multi") or model_path.endswith("/edit") or model_path == "fal-ai/qwen-image-layered":
        payload["image_urls"] = urls
    elif urls:
        payload["image_url"] = urls[0]
    if body.aspect_ratio:
        payload["aspect_ratio"] = body.aspect_ratio
    if body.seed is not None:
        payload["seed"] = body.seed
    if body.model == "flux-pro-kontext":
        payload["guidance_scale"] = body.guidance_scale
    spec = JobSpec(
        kind="image",
        model=model_path,
        payload=payload,
        credits=pricing.image_credits(body.model, body.num_images),
        mode="sync",
        label=body.model,
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/video")
async def generate_video(
    body: VideoRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Veo 3.1 video; waits for the queued job inside the request."""
    check_media_urls(body.first_frame_url, body.last_frame_url)
    if body.generation_mode != "text-to-video" and not body.first_frame_url:
        raise BadRequestError(f"first_frame_url is required for {body.generation_mode}")
    if body.generation_mode == "first-last-frame" and not body.last_frame_url:
        raise BadRequestError("last_frame_url is required for first-last-frame")
    payload: dict = {
        "prompt": body.prompt.strip(),
        "duration": body.duration,
        "aspect_ratio": body.aspect_ratio,
        "resolution": body.resolution,
        "generate_audio": body.generate_audio,
    }
    if body.generation_mode == "image-to-video":
        payload["image_url"] = body.first_frame_url
    elif body.generation_mode == "first-last-frame":
        payload["first_frame_url"] = body.first_frame_url
        payload["last_frame_url"] = body.last_frame_url
    spec = JobSpec(
        kind="video",
        model=VIDEO_MODES[body.generation_mode],
        payload=payload,
        credits=pricing.video_credits(body.duration, body.generate_audio, body.quality),
        poll=VIDEO_POLL,
        label=body.generation_mode,
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/music")
async def generate_music(
    body: MusicRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    spec = JobSpec(
        kind="music",
        model="CassetteAI/music-generator",
        payload={"prompt": body.prompt.strip(), "duration": body.duration},
        credits=pricing.music_credits(body.duration),
        poll=MUSIC_POLL,
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/3d")
async def generate_3d(
    body: Model3dRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Hunyuan3D image-to-3D."""
    check_media_urls(body.input_image_url)
    spec = JobSpec(
        kind="3d",
        model="fal-ai/hunyuan3d-v3/image-to-3d",
        payload={
            "input_image_url": body.input_image_url,
            "generate_type": body.generate_type,
            "enable_pbr": body.enable_pbr,
        },
        credits=pricing.model_3d_credits(body.generate_type),
        poll=MODEL_3D_POLL,
        label=body.generate_type,
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/upscale")
async def generate_upscale(
    body: UpscaleRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    check_media_urls(body.image_url)
    spec = JobSpec(
        kind="image",
        model="fal-ai/creative-upscaler",
        payload={"image_url": body.image_url, "scale": body.scale, "creativity": body.creativity},
        credits=pricing.upscale_credits(body.scale),
        poll=UPSCALE_POLL,
        label="upscale",
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/video-to-audio")
async def generate_video_to_audio(
    body: VideoToAudioRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Add a soundtrack to a video (MMAudio)."""
    check_media_urls(body.video_url)
    spec = JobSpec(
        kind="audio",
        model="fal-ai/mmaudio-v2",
        payload={"video_url": body.video_url, "prompt": body.prompt, "duration": body.duration},
        credits=pricing.VIDEO_TO_AUDIO_CREDITS,
        poll=VIDEO_TO_AUDIO_POLL,
        label="video-to-audio",
    )
    return await _run(client, payer, spec, idempotency_key)


@router.get("/status/{request_id}")
async def generation_status(
    request_id: str,
    model: str = Query(..., min_length=3),
    client: FalClient = Depends(get_fal_client),
):
    return await gateway_service.job_status(client, request_id, model)


@router.get("/result/{request_id}")
async def generation_result(
    request_id: str,
    model: str = Query(..., min_length=3),
    client: FalClient = Depends(get_fal_client),
):
    return await gateway_service.job_result(client, request_id, model)
