"""Process-wide cache for provider OAuth bearer tokens."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_in: float


@dataclass(frozen=True)
class _CachedToken:
    value: str
    expires_at: float


TokenFetcher = Callable[[], Awaitable[AccessToken]]


class AccessTokenCache:
    """Hold one bearer token and refresh it shortly before it expires.

    Concurrent callers that find the token stale share a single refresh: the
    first one takes the lock and fetches, the others wait on the lock and then
    see the fresh token. A failed fetch leaves the previous state untouched and
    the error propagates to the caller that attempted it.
    """

    def __init__(
        self,
        fetcher: TokenFetcher,
        refresh_skew_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._skew = refresh_skew_seconds
        self._clock = clock
        self._token: Optional[_CachedToken] = None
        self._lock = asyncio.Lock()

    def _fresh_value(self) -> Optional[str]:
        token = self._token
        if token is not None and self._clock() + self._skew < token.expires_at:
            return token.value
        return None

    async def get(self) -> str:
        value = self._fresh_value()
        if value is not None:
            return value

        async with self._lock:
            value = self._fresh_value()
            if value is not None:
                return value
            fetched = await self._fetcher()
            self._token = _CachedToken(fetched.value, self._clock() + fetched.expires_in)
            logger.info("Refreshed provider access token (expires in %ss)", fetched.expires_in)
            return fetched.value

    def clear(self) -> None:
        self._token = None
