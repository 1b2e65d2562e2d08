"""
User & API Key Models
=====================

Minimal identity needed by the entitlement subsystem. Profile management
lives elsewhere; these rows only map API keys and payment-provider customer
identities (email, phone number) to a local user id.

Tables:
    users          — user id, email, mobile-money phone number.
    user_api_keys  — API keys with HMAC-SHA256 hashed secrets.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel

from app.core.timeutils import utcnow


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    email: str = Field(index=True, unique=True, max_length=255)
    phone_number: Optional[str] = Field(default=None, index=True, max_length=32)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class UserAPIKey(SQLModel, table=True):
    """API key for a user.

    Key format: ``kl_<key_id>_<secret>``
    - ``key_id``: 8-char alphanumeric, indexed for O(1) lookup.
    - ``key_hash``: HMAC-SHA256 of the secret portion using KLYA_APIKEY_HMAC_SECRET.
    - The raw secret is NEVER stored; it is shown once at creation time.
    """

    __tablename__ = "user_api_keys"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    user_id: str = Field(index=True, max_length=36, foreign_key="users.id")
    key_id: str = Field(index=True, unique=True, max_length=16)
    key_hash: str = Field(max_length=255)
    label: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = Field(default=None, nullable=True)
    revoked_at: Optional[datetime] = Field(default=None, nullable=True)
