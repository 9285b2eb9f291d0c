import pytest
import redis.asyncio as redis
from fastapi import HTTPException

from app.core import rate_limit


class CountingRedis:
    def __init__(self):
        self.counts = {}
        self.expiries = {}

    async def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.expiries[key] = seconds


class BrokenRedis:
    async def incr(self, key):
        raise redis.ConnectionError("connection refused")


@pytest.mark.asyncio
async def test_limit_raises_429_after_threshold(monkeypatch):
    client = CountingRedis()
    monkeypatch.setattr(rate_limit, "_client", client)

    await rate_limit.enforce_rate_limit("checkout:1", 2, 60)
    await rate_limit.enforce_rate_limit("checkout:1", 2, 60)
    with pytest.raises(HTTPException) as excinfo:
        await rate_limit.enforce_rate_limit("checkout:1", 2, 60)

    assert excinfo.value.status_code == 429
    assert list(client.expiries.values()) == [60]


@pytest.mark.asyncio
async def test_limit_fails_open_when_redis_is_down(monkeypatch):
    monkeypatch.setattr(rate_limit, "_client", BrokenRedis())

    await rate_limit.enforce_rate_limit("checkout:1", 1, 60)
