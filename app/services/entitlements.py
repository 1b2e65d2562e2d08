"""
Entitlement Checker — "Is this metered action allowed right now?"
=================================================================

PURPOSE:
    1. **check_usage_limit()** — Reads the subscription's limits snapshot and
       the current-period usage from the ledger and answers
       (allowed, remaining, limit). limit == -1 means unlimited and is
       reported with remaining == -1.
    2. **check_feature()** / **require_feature()** — Capability flags from
       the subscription's features snapshot.
    3. **guard()** — Async context manager wrapping a metered provider call:
       check → run body → record usage only if the body succeeded.

ACCESS RULE:
    A subscription grants nothing (remaining=0) when it is inactive, when
    its trial has ended, or when it was cancelled and end_date has passed.
    pending_payment rides on the term held before checkout: access lasts
    only while that trial or paid term is still running, and uses the
    limits/features it had (payment_details.prior_*). An unpaid checkout
    opened from inactive, or from a lapsed trial or term, grants nothing.

CONCURRENCY:
    Default mode is check-then-record: N concurrent calls from one user may
    overshoot a limit by at most N-1 units. With KLYA_STRICT_ENTITLEMENTS
    the guard holds a per-user asyncio.Lock across check, body and record,
    so one process never overshoots. Users never contend with each other.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from sqlmodel import select

from app.config import settings
from app.core.errors import FeatureNotAvailableError, LimitExceededError, NotFoundError
from app.core.timeutils import utcnow
from app.services.plan_catalog import UNLIMITED
from app.services.usage_ledger import usage_ledger, validate_metric

logger = logging.getLogger(__name__)

__all__ = [
    "EntitlementService",
    "UsageLimit",
    "UsageTicket",
    "access_denial_reason",
    "entitlement_service",
]


@dataclass(frozen=True)
class UsageLimit:
    """Result of a check_usage_limit() call."""

    allowed: bool
    remaining: int
    limit: int
    used: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "remaining": self.remaining, "limit": self.limit}


@dataclass
class UsageTicket:
    """Handed to the body of guard(); the body may fill in usage metadata."""

    user_id: str
    metric: str
    check: UsageLimit
    amount: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)


def access_denial_reason(subscription, now: Optional[datetime] = None) -> Optional[str]:
    """Return why *subscription* grants no access, or None if it does."""
    from app.models.subscription import SubscriptionStatus

    now = now or utcnow()
    status = subscription.status
    if status == SubscriptionStatus.INACTIVE.value:
        return "subscription_inactive"
    if status == SubscriptionStatus.TRIAL.value:
        if subscription.trial_end_date is not None and subscription.trial_end_date <= now:
            return "trial_expired"
    if status == SubscriptionStatus.CANCELLED.value:
        if subscription.end_date is None or subscription.end_date <= now:
            return "subscription_cancelled"
    if status == SubscriptionStatus.ACTIVE.value:
        if subscription.end_date is not None and subscription.end_date <= now:
            return "subscription_expired"
    if status == SubscriptionStatus.PENDING_PAYMENT.value:
        if not _prior_term_running(subscription, now):
            return "payment_pending"
    return None


def _prior_term_running(subscription, now: datetime) -> bool:
    """Whether the term held before the open checkout is still running."""
    from app.models.subscription import SubscriptionStatus

    prior = subscription.payment_details.get("prior_status")
    if prior == SubscriptionStatus.TRIAL.value:
        return subscription.trial_end_date is not None and subscription.trial_end_date > now
    if prior == SubscriptionStatus.ACTIVE.value:
        return subscription.end_date is None or subscription.end_date > now
    if prior == SubscriptionStatus.CANCELLED.value:
        return subscription.end_date is not None and subscription.end_date > now
    return False


def _get_db_session():
    from app.core.database import get_session_context
    return get_session_context()


class EntitlementService:
    """Answers entitlement questions from the subscription snapshot + ledger."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _load_subscription(self, user_id: str):
        from app.models.subscription import Subscription

        with _get_db_session() as session:
            sub = session.exec(
                select(Subscription).where(Subscription.user_id == user_id)
            ).first()
        if sub is None:
            raise NotFoundError(detail=f"No subscription for user {user_id}")
        return sub

    def check_usage_limit(self, user_id: str, metric: str, now: Optional[datetime] = None) -> UsageLimit:
        validate_metric(metric)
        now = now or utcnow()
        sub = self._load_subscription(user_id)
        limit = int(sub.entitled_limits.get(metric, 0))

        reason = access_denial_reason(sub, now)
        if reason is not None:
            return UsageLimit(allowed=False, remaining=0, limit=limit, reason=reason)

        if limit == UNLIMITED:
            return UsageLimit(allowed=True, remaining=UNLIMITED, limit=UNLIMITED)

        used = usage_ledger.aggregate_usage(user_id, metric, usage_ledger.billing_period_start(now))
        allowed = used < limit
        return UsageLimit(
            allowed=allowed,
            remaining=max(0, limit - used),
            limit=limit,
            used=used,
            reason=None if allowed else "limit_reached",
        )

    def check_feature(self, user_id: str, feature: str, now: Optional[datetime] = None) -> bool:
        sub = self._load_subscription(user_id)
        if access_denial_reason(sub, now) is not None:
            return False
        return feature in sub.entitled_features

    def require_feature(self, user_id: str, feature: str) -> None:
        if not self.check_feature(user_id, feature):
            raise FeatureNotAvailableError(
                detail=f"Feature {feature!r} not available for user {user_id}",
                public={"feature": feature},
            )

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def guard(self, user_id: str, metric: str) -> AsyncIterator[UsageTicket]:
        """
        Wrap a metered call::

            async with entitlement_service.guard(user_id, "content_generations") as ticket:
                text = await generator.generate(prompt, options)
                ticket.metadata["tokens"] = len(text.split())

        Raises LimitExceededError before the body runs when denied. Usage is
        recorded only when the body exits without an exception.
        """
        lock = self._user_lock(user_id) if settings.strict_entitlements else nullcontext()
        async with lock:
            check = self.check_usage_limit(user_id, metric)
            if not check.allowed:
                logger.info(
                    "entitlement_denied",
                    extra={"user_id": user_id, "metric": metric, "limit": check.limit, "reason": check.reason},
                )
                raise LimitExceededError(metric, check.remaining, check.limit, check.reason)

            ticket = UsageTicket(user_id=user_id, metric=metric, check=check)
            yield ticket
            usage_ledger.record_usage(user_id, metric, ticket.amount, ticket.metadata)


# Module-level singleton
entitlement_service = EntitlementService()
