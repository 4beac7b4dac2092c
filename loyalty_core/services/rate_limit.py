"""Fixed-window rate guard on Redis; fails open when Redis is unavailable."""

import time
from dataclasses import dataclass

from loyalty_core.core.logging import get_logger

log = get_logger(__name__)

KEY_PREFIX = "ratelimit"


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: int  # seconds until the current window closes


def _window(window_seconds: int, now: float | None = None) -> tuple[int, int]:
    now = time.time() if now is None else now
    index = int(now // window_seconds)
    reset_in = int((index + 1) * window_seconds - now) or 1
    return index, reset_in


async def check_and_increment(redis, key: str, limit: int, window_seconds: int) -> RateLimitResult:
    """
    Count one request against `key` in the current window.
    Redis missing or erroring -> allowed (logged as rate_limit_degraded).
    """
    index, reset_in = _window(window_seconds)
    if redis is None:
        log.warning("rate_limit_degraded", key=key, reason="redis_not_configured")
        return RateLimitResult(allowed=True, remaining=limit, reset_in=reset_in)
    redis_key = f"{KEY_PREFIX}:{key}:{index}"
    try:
        n = await redis.incr(redis_key)
        if n == 1:
            await redis.expire(redis_key, window_seconds)
    except Exception as e:
        log.warning("rate_limit_degraded", key=key, error=str(e))
        return RateLimitResult(allowed=True, remaining=limit, reset_in=reset_in)
    if n > limit:
        log.info("rate_limited", key=key, count=n, limit=limit)
        return RateLimitResult(allowed=False, remaining=0, reset_in=reset_in)
    return RateLimitResult(allowed=True, remaining=limit - n, reset_in=reset_in)
