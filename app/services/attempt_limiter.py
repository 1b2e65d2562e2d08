"""
Attempt Limiter — fixed-window counters persisted in rate_limit_buckets.

One row per key (e.g. ``verify:<user_id>``) holding the attempt count of
the current window and its expiry. Counts survive restarts and are shared
by every worker on the same database; expired rows are purged by the
sweeper, so the table never grows without bound.

Increment is a single conditional UPDATE; a missing or expired bucket is
replaced by a fresh one (a concurrent insert of the same key is retried).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.database import get_engine
from app.core.errors import TooManyRequestsError
from app.core.timeutils import utcnow
from app.models.webhook import RateLimitBucket

logger = logging.getLogger(__name__)

_table = RateLimitBucket.__table__


@dataclass(frozen=True)
class AttemptResult:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int


class AttemptLimiter:
    def hit(self, key: str, limit: int, window_seconds: int, now: Optional[datetime] = None) -> AttemptResult:
        """Count one attempt against *key*; allowed while count <= limit."""
        now = now or utcnow()
        engine = get_engine()

        for attempt in range(2):
            try:
                with engine.begin() as conn:
                    updated = conn.execute(
                        _table.update()
                        .where(_table.c.key == key, _table.c.expires_at > now)
                        .values(count=_table.c.count + 1)
                    )
                    if updated.rowcount == 0:
                        conn.execute(_table.delete().where(_table.c.key == key))
                        conn.execute(
                            _table.insert().values(
                                key=key,
                                count=1,
                                window_started_at=now,
                                expires_at=now + timedelta(seconds=window_seconds),
                            )
                        )
                    count, expires_at = conn.execute(
                        select(_table.c.count, _table.c.expires_at).where(_table.c.key == key)
                    ).one()
                break
            except IntegrityError:
                if attempt:
                    raise
                logger.debug("Concurrent bucket create for %s, retrying", key)

        allowed = count <= limit
        retry_after = max(0, int((expires_at - now).total_seconds())) if not allowed else 0
        return AttemptResult(allowed=allowed, count=count, limit=limit, retry_after_seconds=retry_after)

    def check(self, key: str, limit: int, window_seconds: int) -> AttemptResult:
        result = self.hit(key, limit, window_seconds)
        if not result.allowed:
            logger.info("Attempt limit reached: key=%s count=%d limit=%d", key, result.count, limit)
            raise TooManyRequestsError(
                detail=f"Too many attempts for {key}",
                public={"retry_after_seconds": result.retry_after_seconds, "limit": limit},
            )
        return result

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with get_engine().begin() as conn:
            result = conn.execute(_table.delete().where(_table.c.expires_at <= now))
        if result.rowcount:
            logger.debug("Purged %d expired rate-limit buckets", result.rowcount)
        return result.rowcount


# Module-level singleton
attempt_limiter = AttemptLimiter()
