from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from app.core.security import optional_idempotency_key
from app.deps import get_credit_payer
from app.services import pricing
from app.services.fal import FalClient, PollPolicy, get_fal_client
from app.services.gateway import Payer
from app.services.generation import JobSpec, check_media_urls, run_paid_job

router = APIRouter()

MAX_VOICE_CLONE_CHARS = 5000

VOICE_CLONE_POLL = PollPolicy(interval=0.5, timeout=60.0)
SEPARATE_POLL = PollPolicy(interval=2.0, timeout=180.0)
LIP_SYNC_POLL = PollPolicy(interval=3.0, timeout=300.0)
SFX_POLL = PollPolicy(interval=2.0, timeout=120.0)
TRANSCRIBE_POLL = PollPolicy(interval=2.0, timeout=180.0)


class VoiceCloneRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=MAX_VOICE_CLONE_CHARS)
    voice_url: str | None = None
    language: str = "en"


class SeparateRequest(BaseModel):
    audio_url: str


class LipSyncRequest(BaseModel):
    image_url: str
    audio_url: str
    expression_scale: float = Field(1.0, ge=0, le=1)
    pose_style: int = Field(0, ge=0, le=45)


class SfxRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=1000)
    duration: float = Field(5, ge=1, le=30)


class TranscribeRequest(BaseModel):
    audio_url: str
    language: str | None = None
    task: str = "transcribe"


async def _run(client: FalClient, payer: Payer, spec: JobSpec, idempotency_key: str | None) -> dict:
    outcome = await run_paid_job(
        client, payer.owner, spec, idempotency_key=optional_idempotency_key(idempotency_key)
    )
    return outcome.as_response()


@router.post("/voice-clone")
async def voice_clone(
    body: VoiceCloneRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Text to speech with XTTS-v2, cloning `voice_url` when given. Charged per 500 characters."""
    check_media_urls(body.voice_url)
    text = body.text.strip()
    payload: dict = {"text": text, "language": body.language}
    if body.voice_url:
        payload["audio_url"] = body.voice_url
    spec = JobSpec(
        kind="audio",
        model="fal-ai/xtts-v2",
        payload=payload,
        credits=pricing.voice_clone_credits(text),
        poll=VOICE_CLONE_POLL,
        label="voice-clone",
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/separate")
async def separate_stems(
    body: SeparateRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    check_media_urls(body.audio_url)
    spec = JobSpec(
        kind="audio",
        model="fal-ai/demucs",
        payload={"audio_url": body.audio_url, "model": "htdemucs_ft", "shifts": 2, "overlap": 0.25},
        credits=pricing.STEM_SEPARATION_CREDITS,
        poll=SEPARATE_POLL,
        label="separate",
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/lip-sync")
async def lip_sync(
    body: LipSyncRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Animate a portrait to an audio track (SadTalker)."""
    check_media_urls(body.image_url, body.audio_url)
    spec = JobSpec(
        kind="audio",
        model="fal-ai/sadtalker",
        payload={
            "source_image_url": body.image_url,
            "driven_audio_url": body.audio_url,
            "expression_scale": body.expression_scale,
            "pose_style": body.pose_style,
            "preprocess": "full",
            "still_mode": False,
            "use_enhancer": True,
        },
        credits=pricing.LIP_SYNC_CREDITS,
        poll=LIP_SYNC_POLL,
        label="lip-sync",
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/sfx")
async def sound_effect(
    body: SfxRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    spec = JobSpec(
        kind="audio",
        model="fal-ai/audioldm2",
        payload={"prompt": body.prompt.strip(), "audio_length_in_s": body.duration},
        credits=pricing.SFX_CREDITS,
        poll=SFX_POLL,
        label="sfx",
    )
    return await _run(client, payer, spec, idempotency_key)


@router.post("/transcribe")
async def transcribe(
    body: TranscribeRequest,
    payer: Payer = Depends(get_credit_payer),
    client: FalClient = Depends(get_fal_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Whisper transcription with segment timestamps."""
    check_media_urls(body.audio_url)
    payload: dict = {"audio_url": body.audio_url, "task": body.task, "chunk_level": "segment"}
    if body.language:
        payload["language"] = body.language
    spec = JobSpec(
        kind="audio",
        model="fal-ai/whisper",
        payload=payload,
        credits=pricing.TRANSCRIBE_CREDITS,
        poll=TRANSCRIBE_POLL,
        label="transcribe",
    )
    return await _run(client, payer, spec, idempotency_key)
