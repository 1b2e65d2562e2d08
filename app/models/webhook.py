"""
Webhook inbox and attempt-limit tables.

WebhookEvent rows are written as soon as a provider push has passed
signature verification, before any state transition is attempted. The
unique (provider, event_key) pair acknowledges duplicate deliveries without
reprocessing them; rows that fail processing are retried by the sweeper.

RateLimitBucket is a per-key attempt counter with an expiry, used instead
of an in-process attempt map so limits survive restarts and stale keys are
purged.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Column, Field, SQLModel, Text

from app.core.timeutils import utcnow


class WebhookStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_key", name="uq_webhook_events_provider_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(max_length=32)
    event_key: str = Field(max_length=255)
    event_type: str = Field(max_length=64)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default=WebhookStatus.RECEIVED.value, index=True, max_length=16)
    attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    received_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = Field(default=None, nullable=True)


class RateLimitBucket(SQLModel, table=True):
    __tablename__ = "rate_limit_buckets"

    key: str = Field(primary_key=True, max_length=255)
    count: int = Field(default=0)
    window_started_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)
