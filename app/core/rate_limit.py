"""Redis-backed fixed-window rate limiting."""

from __future__ import annotations

import logging
import time
from typing import Optional

import redis.asyncio as redis
from fastapi import HTTPException, status

from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_client: Optional[redis.Redis] = None


def _get_client() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


async def enforce_rate_limit(key: str, limit: int, window_seconds: int) -> None:
    """Raise 429 once ``key`` has been hit more than ``limit`` times in the current window."""
    if limit <= 0:
        return

    window_key = f"rl:{key}:{int(time.time()) // window_seconds}"

    try:
        client = _get_client()
        count = await client.incr(window_key)
        if count == 1:
            await client.expire(window_key, window_seconds)
    except redis.RedisError as exc:
        # fail-open when redis is unavailable
        logger.warning("Rate limit check skipped for %s: %s", key, exc)
        return

    if count > limit:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
