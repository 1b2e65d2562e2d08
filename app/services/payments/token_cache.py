"""
OAuth client-credential token cache (one per provider).

- Tokens are reused until ``expires_in - skew`` seconds have elapsed
  (monotonic clock, immune to wall-clock jumps).
- Refresh is single-flight: concurrent callers that find the cache empty
  wait on one asyncio.Lock and the first one in fetches; the rest re-check
  and reuse its token.
- ``invalidate(stale)`` drops the cached token only if it is still the one
  the caller saw rejected, so a 401 racing a fresh refresh does not throw
  the new token away.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

TokenFetcher = Callable[[], Awaitable[Tuple[str, int]]]

DEFAULT_SKEW_SECONDS = 60
DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class _CachedToken:
    value: str
    expires_at: float


class OAuthTokenCache:
    def __init__(
        self,
        name: str,
        fetch: TokenFetcher,
        skew_seconds: int = DEFAULT_SKEW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._name = name
        self._fetch = fetch
        self._skew = skew_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._token: Optional[_CachedToken] = None
        self.fetch_count = 0

    def _valid(self) -> Optional[str]:
        token = self._token
        if token is not None and token.expires_at > self._clock():
            return token.value
        return None

    async def get(self) -> str:
        value = self._valid()
        if value is not None:
            return value

        async with self._lock:
            value = self._valid()
            if value is not None:
                return value

            value, expires_in = await self._fetch()
            self.fetch_count += 1
            expires_in = int(expires_in or DEFAULT_EXPIRES_IN)
            lifetime = max(expires_in - self._skew, expires_in // 2)
            self._token = _CachedToken(value=value, expires_at=self._clock() + lifetime)
            logger.debug("%s token refreshed (valid %ds)", self._name, lifetime)
            return value

    def invalidate(self, stale: Optional[str] = None) -> None:
        token = self._token
        if token is None:
            return
        if stale is None or token.value == stale:
            self._token = None
            logger.info("%s token invalidated", self._name)
