"""API key rate limits: fixed-window per-minute and per-day counters in Redis."""

from datetime import datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import get_settings
from app.core.exceptions import TooManyRequestsError
from app.core.logging import get_logger

log = get_logger(__name__)

KEY_PREFIX = "apikey:requests"
MINUTE_TTL_SECONDS = 120
DAY_TTL_SECONDS = 25 * 3600  # 25 hours so key expires after the day

_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def _keys(api_key_id: str, now: datetime) -> tuple[str, str]:
    return (
        f"{KEY_PREFIX}:{api_key_id}:m:{now.strftime('%Y%m%d%H%M')}",
        f"{KEY_PREFIX}:{api_key_id}:d:{now.strftime('%Y-%m-%d')}",
    )


async def _incr(redis, key: str, ttl: int) -> int:
    n = await redis.incr(key)
    if n == 1:
        await redis.expire(key, ttl)
    return n


async def hit(redis, api_key_id: str, per_minute: int, per_day: int, now: datetime | None = None) -> dict[str, int]:
    """
    Count one request against both windows and raise 429 if either is exceeded.

    Redis being unreachable does not block traffic; the request is let through.
    """
    now = now or datetime.utcnow()
    minute_key, day_key = _keys(api_key_id, now)
    try:
        minute_count = await _incr(redis, minute_key, MINUTE_TTL_SECONDS)
        day_count = await _incr(redis, day_key, DAY_TTL_SECONDS)
    except (RedisError, OSError) as e:
        log.warning("rate_limit_unavailable", api_key_id=api_key_id, error=str(e))
        return {"minute": 0, "day": 0}
    if minute_count > per_minute:
        raise TooManyRequestsError(
            "Rate limit exceeded (per minute)",
            details={"limit": per_minute, "window": "minute", "retry_after_seconds": 60 - now.second},
        )
    if day_count > per_day:
        raise TooManyRequestsError(
            "Rate limit exceeded (per day)",
            details={"limit": per_day, "window": "day"},
        )
    return {"minute": minute_count, "day": day_count}
