"""
Usage Ledger — Per-Day Usage Records & Append-Only Events
=========================================================

PURPOSE:
    1. **record_usage()** — Appends a UsageEvent to today's UsageRecord
       (created lazily; the unique (user_id, usage_date) key makes the
       create race-safe). Adds ``tokens`` / ``file_size`` metadata to the
       day's running totals.
    2. **aggregate_usage()** — Pure read: SUM of event counts since a date.
    3. **billing_period_start()** — First of the current month, 00:00 UTC.
    4. **get_user_stats()** — Daily breakdown + totals over the last N days.

There are no separately maintained counters: quota decisions always come
from the event rows, so the ledger cannot drift from itself.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.core.database import sqlite_retry
from app.core.errors import InvalidRequestError
from app.core.timeutils import month_start, utcnow
from app.models.usage import UsageEvent, UsageMetric, UsageRecord

logger = logging.getLogger(__name__)

__all__ = ["UsageLedger", "usage_ledger", "METRICS"]

METRICS = tuple(m.value for m in UsageMetric)

# Metadata keys kept per metric; anything else is dropped.
_METADATA_KEYS = {
    UsageMetric.CONTENT_GENERATIONS.value: ("tokens", "language", "type"),
    UsageMetric.AUDIO_TRANSCRIPTIONS.value: ("duration", "language", "file_size"),
    UsageMetric.IMAGE_GENERATIONS.value: ("prompt", "style"),
    UsageMetric.API_CALLS.value: ("endpoint", "method", "response_time", "status"),
}


def _get_db_session():
    from app.core.database import get_session_context
    return get_session_context()


def validate_metric(metric: str) -> str:
    if metric not in METRICS:
        raise InvalidRequestError(
            detail=f"Unknown usage metric {metric!r}",
            public={"metric": metric, "available": list(METRICS)},
        )
    return metric


class UsageLedger:
    """Append-only usage ledger backed by usage_records / usage_events."""

    def billing_period_start(self, now: Optional[datetime] = None) -> datetime:
        return month_start(now or utcnow())

    def record_usage(
        self,
        user_id: str,
        metric: str,
        amount: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> UsageEvent:
        """Append one usage event to today's record. Returns the stored event."""
        validate_metric(metric)
        if amount < 1:
            raise InvalidRequestError(detail=f"Usage amount must be >= 1, got {amount}")

        now = now or utcnow()
        meta = {
            k: v for k, v in (metadata or {}).items()
            if k in _METADATA_KEYS[metric] and v is not None
        }

        def _write() -> UsageEvent:
            with _get_db_session() as session:
                record = self._get_or_create_record(session, user_id, now.date())
                event = UsageEvent(
                    record_id=record.id,
                    user_id=user_id,
                    usage_date=record.usage_date,
                    metric=metric,
                    count=amount,
                    metadata_json=json.dumps(meta),
                    created_at=now,
                )
                record.total_tokens_used += int(meta.get("tokens") or 0)
                record.total_storage_used += int(meta.get("file_size") or 0)
                record.updated_at = now
                session.add(event)
                session.add(record)
                session.commit()
                session.refresh(event)
                return event

        event = sqlite_retry(_write)
        logger.debug(
            "usage_recorded",
            extra={"user_id": user_id, "metric": metric, "amount": amount},
        )
        return event

    def _get_or_create_record(self, session, user_id: str, usage_date: date) -> UsageRecord:
        stmt = select(UsageRecord).where(
            UsageRecord.user_id == user_id,
            UsageRecord.usage_date == usage_date,
        )
        record = session.exec(stmt).first()
        if record is not None:
            return record

        record = UsageRecord(user_id=user_id, usage_date=usage_date)
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            # Another request created today's record first.
            session.rollback()
            return session.exec(stmt).one()
        session.refresh(record)
        return record

    def aggregate_usage(
        self,
        user_id: str,
        metric: str,
        since: Union[date, datetime],
    ) -> int:
        """Sum of event counts for *metric* on or after *since*."""
        validate_metric(metric)
        since_date = since.date() if isinstance(since, datetime) else since
        with _get_db_session() as session:
            total = session.exec(
                select(func.coalesce(func.sum(UsageEvent.count), 0)).where(
                    UsageEvent.user_id == user_id,
                    UsageEvent.metric == metric,
                    UsageEvent.usage_date >= since_date,
                )
            ).one()
        return int(total)

    def current_period_usage(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Usage of every metric since the start of the current billing period."""
        since = self.billing_period_start(now).date()
        used = {m: 0 for m in METRICS}
        with _get_db_session() as session:
            rows = session.exec(
                select(UsageEvent.metric, func.sum(UsageEvent.count))
                .where(UsageEvent.user_id == user_id, UsageEvent.usage_date >= since)
                .group_by(UsageEvent.metric)
            ).all()
        for metric, total in rows:
            used[metric] = int(total or 0)
        return used

    def get_user_stats(self, user_id: str, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Daily breakdown of the last *days* days (today included) plus totals."""
        if days < 1:
            raise InvalidRequestError(detail=f"days must be >= 1, got {days}")

        today = (now or utcnow()).date()
        start = today - timedelta(days=days - 1)

        with _get_db_session() as session:
            event_rows = session.exec(
                select(UsageEvent.usage_date, UsageEvent.metric, func.sum(UsageEvent.count))
                .where(UsageEvent.user_id == user_id, UsageEvent.usage_date >= start)
                .group_by(UsageEvent.usage_date, UsageEvent.metric)
            ).all()
            records = session.exec(
                select(UsageRecord)
                .where(UsageRecord.user_id == user_id, UsageRecord.usage_date >= start)
                .order_by(UsageRecord.usage_date)
            ).all()

        daily: Dict[date, Dict[str, Any]] = {}
        for record in records:
            daily[record.usage_date] = {
                "date": record.usage_date.isoformat(),
                **{m: 0 for m in METRICS},
                "tokens_used": record.total_tokens_used,
                "storage_used": record.total_storage_used,
            }
        for usage_date, metric, total in event_rows:
            if usage_date in daily:
                daily[usage_date][metric] = int(total or 0)

        totals: Dict[str, int] = {m: 0 for m in METRICS}
        totals["tokens_used"] = 0
        totals["storage_used"] = 0
        for day in daily.values():
            for key in totals:
                totals[key] += day[key]

        return {
            "user_id": user_id,
            "period_days": days,
            "start_date": start.isoformat(),
            "end_date": today.isoformat(),
            "daily": [daily[d] for d in sorted(daily)],
            "totals": totals,
        }


# Module-level singleton
usage_ledger = UsageLedger()
