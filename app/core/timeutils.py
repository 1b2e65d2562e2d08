"""
UTC time helpers.

All persisted timestamps are naive UTC (SQLite drops tzinfo on round-trip),
so every comparison against stored values goes through ``utcnow()``.
"""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utctoday() -> date:
    return utcnow().date()


def month_start(now: datetime) -> datetime:
    """First day of ``now``'s calendar month at 00:00."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
