"""Credit prices for generation routes and credit packs. 1 credit is about $0.10 of provider cost."""

import math
import re

from app.core.exceptions import BadRequestError

MAX_CREDIT_AMOUNT = 10000

IMAGE_CREDITS = {
    "flux-pro-kontext": 0.5,
    "flux-2": 0.25,
    "nano-banana-pro": 2.5,
    "qwen-image-layered": 0.25,
}
DEFAULT_IMAGE_CREDITS = 0.5
MAX_BATCH_IMAGES = 100

VIDEO_MINIMUM_CREDITS = 2
VIDEO_USD_PER_CREDIT = 0.20
VIDEO_DEFAULT_SECONDS = 8
# (quality, has_audio) -> USD per second
VIDEO_PRICE_PER_SECOND = {
    ("quality", True): 0.825,
    ("quality", False): 0.55,
    ("fast", True): 0.44,
    ("fast", False): 0.22,
}

MUSIC_MIN_SECONDS = 10
MUSIC_MAX_SECONDS = 180
MUSIC_MINIMUM_CREDITS = 0.2

VIDEO_TO_AUDIO_CREDITS = 0.4
MODEL_3D_CREDITS = {"Normal": 2.5, "LowPoly": 2.5, "Geometry": 2.0}

VOICE_CLONE_CHARS_PER_UNIT = 500
VOICE_CLONE_CREDITS_PER_UNIT = 0.5
STEM_SEPARATION_CREDITS = 2.0
LIP_SYNC_CREDITS = 3.0
SFX_CREDITS = 1.0
TRANSCRIBE_CREDITS = 1.0

CREDITS_PER_DOLLAR = 5
# minimum purchase in USD -> bonus multiplier, highest tier first
PURCHASE_TIERS = ((80, 1.3), (40, 1.2), (20, 1.1))

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s?\s*$")


def round_credits(value: float) -> float:
    # float $inc drifts in the last digits; the ledger only ever deals in hundredths of a credit
    # "+ 0.0" turns a rounded -0.0 into 0.0
    return round(float(value), 2) + 0.0


def validate_credit_amount(amount: float) -> float:
    try:
        amount = float(amount)
    except (TypeError, ValueError) as e:
        raise BadRequestError("Credit amount must be a number") from e
    if not math.isfinite(amount) or amount <= 0 or amount > MAX_CREDIT_AMOUNT:
        raise BadRequestError(
            f"Credit amount must be greater than 0 and at most {MAX_CREDIT_AMOUNT}",
            details={"amount": amount if math.isfinite(amount) else str(amount)},
        )
    return round_credits(amount)


def image_credits(model: str | None, num_images: int = 1) -> float:
    per_image = IMAGE_CREDITS.get(model or "", DEFAULT_IMAGE_CREDITS)
    count = max(1, min(MAX_BATCH_IMAGES, int(num_images or 1)))
    return round_credits(per_image * count)


def parse_duration_seconds(duration: str | int | float | None, default: int) -> int:
    if isinstance(duration, (int, float)):
        return int(duration) if duration > 0 else default
    if not duration:
        return default
    m = _DURATION_RE.match(str(duration))
    if not m:
        return default
    return int(float(m.group(1))) or default


def video_credits(duration: str | int | None, has_audio: bool, quality: str) -> float:
    seconds = parse_duration_seconds(duration, VIDEO_DEFAULT_SECONDS)
    tier = "quality" if quality == "quality" else "fast"
    cost = seconds * VIDEO_PRICE_PER_SECOND[(tier, bool(has_audio))]
    # tolerate float noise so 8 * 0.55 / 0.20 stays 22, not 23
    return float(max(VIDEO_MINIMUM_CREDITS, math.ceil(cost / VIDEO_USD_PER_CREDIT - 1e-9)))


def music_credits(duration_seconds: float) -> float:
    clamped = max(MUSIC_MIN_SECONDS, min(MUSIC_MAX_SECONDS, duration_seconds))
    minutes = clamped / 60
    return max(MUSIC_MINIMUM_CREDITS, math.ceil(minutes * 4) / 4)


def upscale_credits(scale: int) -> float:
    return 1.0 if scale == 4 else 0.5


def model_3d_credits(generate_type: str) -> float:
    return MODEL_3D_CREDITS.get(generate_type, MODEL_3D_CREDITS["Normal"])


def voice_clone_credits(text: str) -> float:
    units = math.ceil(len(text) / VOICE_CLONE_CHARS_PER_UNIT)
    return max(1.0, units * VOICE_CLONE_CREDITS_PER_UNIT)


def purchase_credits(amount_usd: float) -> int:
    multiplier = 1.0
    for threshold, tier_multiplier in PURCHASE_TIERS:
        if amount_usd >= threshold:
            multiplier = tier_multiplier
            break
    return math.floor(amount_usd * CREDITS_PER_DOLLAR * multiplier + 1e-9)


def price_list() -> dict:
    return {
        "image": {**IMAGE_CREDITS, "default": DEFAULT_IMAGE_CREDITS},
        "video": {
            "usd_per_second": {f"{q}{'_audio' if a else ''}": p for (q, a), p in VIDEO_PRICE_PER_SECOND.items()},
            "usd_per_credit": VIDEO_USD_PER_CREDIT,
            "minimum": VIDEO_MINIMUM_CREDITS,
        },
        "music": {"per_quarter_minute": 0.25, "minimum": MUSIC_MINIMUM_CREDITS},
        "upscale": {"2x": upscale_credits(2), "4x": upscale_credits(4)},
        "video_to_audio": VIDEO_TO_AUDIO_CREDITS,
        "model_3d": MODEL_3D_CREDITS,
        "audio": {
            "voice_clone_per_500_chars": VOICE_CLONE_CREDITS_PER_UNIT,
            "stem_separation": STEM_SEPARATION_CREDITS,
            "lip_sync": LIP_SYNC_CREDITS,
            "sfx": SFX_CREDITS,
            "transcribe": TRANSCRIBE_CREDITS,
        },
        "purchase": {
            "credits_per_dollar": CREDITS_PER_DOLLAR,
            "tiers": [{"min_usd": t, "multiplier": m} for t, m in PURCHASE_TIERS],
        },
    }
