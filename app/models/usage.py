"""
Usage Models
============

SQLModel tables for the usage ledger:
- UsageRecord: one row per (user_id, usage_date), created lazily on the
  first metered action of a UTC day. Carries the day's running token and
  storage totals; never written once the day has rolled over.
- UsageEvent: append-only event rows belonging to a day record. Quota
  aggregation is a SUM over these rows; no separate counters exist.
"""

import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Column, Field, SQLModel, Text

from app.core.timeutils import utcnow


class UsageMetric(str, Enum):
    CONTENT_GENERATIONS = "content_generations"
    AUDIO_TRANSCRIPTIONS = "audio_transcriptions"
    IMAGE_GENERATIONS = "image_generations"
    API_CALLS = "api_calls"


class UsageRecord(SQLModel, table=True):
    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_usage_records_user_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=36)
    usage_date: date = Field(index=True)
    total_tokens_used: int = Field(default=0)
    total_storage_used: int = Field(default=0)  # bytes
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UsageEvent(SQLModel, table=True):
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_user_metric_date", "user_id", "metric", "usage_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    record_id: int = Field(index=True, foreign_key="usage_records.id")
    user_id: str = Field(max_length=36)
    usage_date: date
    metric: str = Field(max_length=32)
    count: int = Field(default=1)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, default="{}"))
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def event_metadata(self) -> Dict[str, Any]:
        return json.loads(self.metadata_json or "{}")
