"""
Tests for the database-backed attempt limiter.
"""

from datetime import timedelta

import pytest

from app.core.errors import TooManyRequestsError
from app.services.attempt_limiter import AttemptLimiter


@pytest.fixture
def limiter():
    return AttemptLimiter()


class TestHit:
    def test_allows_up_to_limit(self, limiter, now):
        results = [limiter.hit("verify:u1", 3, 60, now=now) for _ in range(3)]
        assert all(r.allowed for r in results)
        assert [r.count for r in results] == [1, 2, 3]

    def test_blocks_above_limit(self, limiter, now):
        for _ in range(3):
            limiter.hit("verify:u1", 3, 60, now=now)
        result = limiter.hit("verify:u1", 3, 60, now=now + timedelta(seconds=10))
        assert result.allowed is False
        assert result.retry_after_seconds == 50

    def test_window_resets_after_expiry(self, limiter, now):
        for _ in range(4):
            limiter.hit("verify:u1", 3, 60, now=now)
        result = limiter.hit("verify:u1", 3, 60, now=now + timedelta(seconds=61))
        assert result.allowed is True
        assert result.count == 1

    def test_keys_are_independent(self, limiter, now):
        for _ in range(4):
            limiter.hit("verify:u1", 3, 60, now=now)
        assert limiter.hit("verify:u2", 3, 60, now=now).allowed is True


class TestCheck:
    def test_raises_with_retry_after(self, limiter):
        limiter.check("verify:u1", 1, 60)
        with pytest.raises(TooManyRequestsError) as exc_info:
            limiter.check("verify:u1", 1, 60)
        assert 0 < exc_info.value.public["retry_after_seconds"] <= 60


class TestPurge:
    def test_only_expired_rows_removed(self, limiter, now):
        limiter.hit("a", 5, 30, now=now - timedelta(minutes=1))
        limiter.hit("b", 5, 300, now=now)
        assert limiter.purge_expired(now) == 1
        assert limiter.purge_expired(now) == 0
