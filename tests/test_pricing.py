import pytest

from app.core.exceptions import BadRequestError
from app.services import pricing


def test_image_credits_by_model_and_count():
    assert pricing.image_credits("flux-pro-kontext") == 0.5
    assert pricing.image_credits("flux-2", 4) == 1.0
    assert pricing.image_credits("nano-banana-pro", 2) == 5.0
    assert pricing.image_credits("unknown-model") == pricing.DEFAULT_IMAGE_CREDITS
    assert pricing.image_credits("flux-2", 1000) == 25.0  # clamped to 100 images


def test_video_credits():
    # 8s * 0.55 / 0.20 = 22 exactly, float noise must not round it up to 23
    assert pricing.video_credits("8s", has_audio=False, quality="quality") == 22
    assert pricing.video_credits("8s", has_audio=True, quality="quality") == 33
    assert pricing.video_credits("4s", has_audio=False, quality="fast") == 5
    assert pricing.video_credits(None, has_audio=True, quality="fast") == 18
    assert pricing.video_credits("1s", has_audio=False, quality="fast") == 2


def test_parse_duration_seconds():
    assert pricing.parse_duration_seconds("6s", 8) == 6
    assert pricing.parse_duration_seconds(" 10 ", 8) == 10
    assert pricing.parse_duration_seconds(12, 8) == 12
    assert pricing.parse_duration_seconds("soon", 8) == 8
    assert pricing.parse_duration_seconds(0, 8) == 8


def test_music_credits_clamped_and_quarter_rounded():
    assert pricing.music_credits(30) == 0.5
    assert pricing.music_credits(60) == 1.0
    assert pricing.music_credits(61) == 1.25
    assert pricing.music_credits(1) == 0.25  # clamped to 10 s
    assert pricing.music_credits(600) == 3.0  # clamped to 180 s


def test_fixed_prices():
    assert pricing.upscale_credits(4) == 1.0
    assert pricing.upscale_credits(2) == 0.5
    assert pricing.model_3d_credits("Geometry") == 2.0
    assert pricing.model_3d_credits("Unknown") == 2.5


def test_voice_clone_credits():
    assert pricing.voice_clone_credits("hi") == 1.0
    assert pricing.voice_clone_credits("x" * 1500) == 1.5
    assert pricing.voice_clone_credits("x" * 5000) == 5.0


@pytest.mark.parametrize(
    "usd,credits",
    [(1, 5), (19.99, 99), (20, 110), (40, 240), (80, 520), (100, 650)],
)
def test_purchase_credits_tiers(usd, credits):
    assert pricing.purchase_credits(usd) == credits


def test_validate_credit_amount():
    assert pricing.validate_credit_amount(1.234) == 1.23
    for bad in (0, -1, 10001, float("nan"), "abc"):
        with pytest.raises(BadRequestError):
            pricing.validate_credit_amount(bad)
