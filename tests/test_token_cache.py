"""
Tests for OAuthTokenCache: reuse, expiry skew, single-flight refresh and
stale-token invalidation.
"""

import asyncio

import pytest

from app.services.payments import OAuthTokenCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _fetcher(tokens, expires_in=3600, delay=0.0):
    issued = iter(tokens)

    async def fetch():
        if delay:
            await asyncio.sleep(delay)
        return next(issued), expires_in

    return fetch


class TestReuse:
    @pytest.mark.asyncio
    async def test_token_reused_until_expiry(self):
        clock = FakeClock()
        cache = OAuthTokenCache("test", _fetcher(["t1", "t2"]), skew_seconds=60, clock=clock)

        assert await cache.get() == "t1"
        clock.now += 3500
        assert await cache.get() == "t1"
        assert cache.fetch_count == 1

        clock.now += 100  # past expires_in - skew
        assert await cache.get() == "t2"
        assert cache.fetch_count == 2

    @pytest.mark.asyncio
    async def test_short_lived_token_keeps_half_its_lifetime(self):
        clock = FakeClock()
        cache = OAuthTokenCache("test", _fetcher(["t1", "t2"], expires_in=60), skew_seconds=60, clock=clock)

        await cache.get()
        clock.now += 29
        assert await cache.get() == "t1"
        clock.now += 2
        assert await cache.get() == "t2"


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self):
        cache = OAuthTokenCache("test", _fetcher(["t1", "t2"], delay=0.01))

        tokens = await asyncio.gather(*(cache.get() for _ in range(10)))

        assert tokens == ["t1"] * 10
        assert cache.fetch_count == 1


class TestInvalidate:
    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self):
        cache = OAuthTokenCache("test", _fetcher(["t1", "t2"]))
        await cache.get()
        cache.invalidate("t1")
        assert await cache.get() == "t2"

    @pytest.mark.asyncio
    async def test_stale_invalidate_keeps_fresh_token(self):
        cache = OAuthTokenCache("test", _fetcher(["t1", "t2"]))
        await cache.get()
        cache.invalidate("t1")
        await cache.get()

        cache.invalidate("t1")  # a late 401 for the old token
        assert await cache.get() == "t2"
        assert cache.fetch_count == 2
