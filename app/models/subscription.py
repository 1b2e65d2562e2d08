"""
Subscription Models
===================

SQLModel tables for persistent subscription state:
- Subscription: one row per user (unique on user_id). Holds the plan,
  lifecycle status, the limits/features snapshot copied from the catalog at
  (re)assignment, and the correlation data of the last payment attempt.
- BillingHistoryEntry: append-only billing ledger. The unique
  (user_id, transaction_id) constraint is the dedupe key that makes payment
  confirmation apply at most once.

JSON-valued columns are stored as TEXT and exposed through helpers.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Column, Field, SQLModel, Text

from app.core.timeutils import utcnow


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    PENDING_PAYMENT = "pending_payment"


class BillingStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True, max_length=36)
    plan: str = Field(default="starter", max_length=32)
    status: str = Field(default=SubscriptionStatus.TRIAL.value, index=True, max_length=32)
    billing_cycle: str = Field(default="monthly", max_length=16)
    start_date: datetime = Field(default_factory=utcnow)
    end_date: Optional[datetime] = Field(default=None, nullable=True, index=True)
    trial_end_date: Optional[datetime] = Field(default=None, nullable=True, index=True)
    payment_method: Optional[str] = Field(default=None, nullable=True, max_length=32)
    payment_transaction_id: Optional[str] = Field(default=None, nullable=True, index=True, max_length=255)
    payment_reference: Optional[str] = Field(default=None, nullable=True, index=True, max_length=255)
    payment_details_json: str = Field(default="{}", sa_column=Column(Text, default="{}"))
    limits_json: str = Field(default="{}", sa_column=Column(Text, default="{}"))
    features_json: str = Field(default="[]", sa_column=Column(Text, default="[]"))
    auto_renew: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # -- JSON helpers ------------------------------------------------------

    @property
    def limits(self) -> Dict[str, int]:
        return json.loads(self.limits_json or "{}")

    def set_limits(self, limits: Dict[str, int]) -> None:
        self.limits_json = json.dumps(dict(limits))

    @property
    def features(self) -> List[str]:
        return json.loads(self.features_json or "[]")

    def set_features(self, features) -> None:
        self.features_json = json.dumps(sorted(features))

    # While a checkout is unpaid the pre-upgrade snapshot stays in force.

    @property
    def entitled_limits(self) -> Dict[str, int]:
        if self.status == SubscriptionStatus.PENDING_PAYMENT.value:
            return dict(self.payment_details.get("prior_limits") or {})
        return self.limits

    @property
    def entitled_features(self) -> List[str]:
        if self.status == SubscriptionStatus.PENDING_PAYMENT.value:
            return list(self.payment_details.get("prior_features") or [])
        return self.features

    @property
    def payment_details(self) -> Dict[str, Any]:
        return json.loads(self.payment_details_json or "{}")

    def set_payment_details(self, details: Dict[str, Any]) -> None:
        """Replace payment_details; mirrors the lookup keys into indexed columns."""
        details = {k: v for k, v in details.items() if v is not None}
        self.payment_details_json = json.dumps(details)
        self.payment_transaction_id = details.get("transaction_id")
        self.payment_reference = details.get("reference")

    def to_dict(self) -> Dict[str, Any]:
        details = self.payment_details
        return {
            "user_id": self.user_id,
            "plan": self.plan,
            "status": self.status,
            "billing_cycle": self.billing_cycle,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "trial_end_date": _iso(self.trial_end_date),
            "payment_method": self.payment_method,
            "payment_details": {
                "transaction_id": details.get("transaction_id"),
                "reference": details.get("reference"),
                "phone_number": details.get("phone_number"),
                "authorization_url": details.get("authorization_url"),
            },
            "limits": self.limits,
            "features": self.features,
            "auto_renew": self.auto_renew,
        }


class BillingHistoryEntry(SQLModel, table=True):
    __tablename__ = "billing_history"
    __table_args__ = (
        UniqueConstraint("user_id", "transaction_id", name="uq_billing_history_user_txn"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    subscription_id: int = Field(index=True, foreign_key="subscriptions.id")
    user_id: str = Field(index=True, max_length=36)
    date: datetime = Field(default_factory=utcnow)
    amount_minor: int = Field(default=0)  # pesewas
    currency: str = Field(default="GHS", max_length=8)
    status: str = Field(default=BillingStatus.PAID.value, max_length=16)
    transaction_id: str = Field(max_length=255)
    payment_method: str = Field(max_length=32)
    plan: str = Field(max_length=32)

    @property
    def amount(self) -> Decimal:
        return (Decimal(self.amount_minor) / 100).quantize(Decimal("0.01"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": _iso(self.date),
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "payment_method": self.payment_method,
            "plan": self.plan,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
