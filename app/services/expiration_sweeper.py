"""
Expiration Sweeper — periodic time-based subscription transitions
=================================================================

PURPOSE:
    Reconciles the transitions no request triggers. One sweep, in order:
      1. trial with trial_end_date < now                 → inactive
      2. active with end_date < now, auto_renew off      → inactive
      3. active with end_date < now, auto_renew on       → renew via the last
         payment method (pending_payment); any failure   → inactive
      4. cancelled with end_date < now                   → inactive
      5. pending_payment older than the pending timeout  → verify once:
         success → active, failed → inactive + failed billing entry,
         still pending → inactive, provider down → left for the next sweep
      6. retry unprocessed webhook inbox rows; purge expired rate-limit buckets

    Every step selects only rows still in the source state, so a second
    sweep over the same data changes nothing.

CONFIGURATION (env vars with KLYA_ prefix):
    KLYA_SWEEPER_INTERVAL_SECONDS         — loop period (default 300)
    KLYA_PENDING_PAYMENT_TIMEOUT_MINUTES  — pending timeout (default 60)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlmodel import select

from app.config import settings
from app.core.errors import KlyaError
from app.core.timeutils import utcnow
from app.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

S = SubscriptionStatus


@dataclass
class SweepReport:
    trials_expired: int = 0
    terms_expired: int = 0
    renewals_initiated: int = 0
    renewals_failed: int = 0
    cancellations_expired: int = 0
    pending_confirmed: int = 0
    pending_failed: int = 0
    pending_expired: int = 0
    pending_deferred: int = 0
    webhooks_retried: int = 0
    buckets_purged: int = 0

    @property
    def changed(self) -> int:
        return (
            self.trials_expired + self.terms_expired + self.renewals_initiated
            + self.renewals_failed + self.cancellations_expired + self.pending_confirmed
            + self.pending_failed + self.pending_expired
        )


def _get_db_session():
    from app.core.database import get_session_context
    return get_session_context()


class ExpirationSweeper:
    def __init__(self, subscriptions=None, webhooks=None, limiter=None) -> None:
        self._subscriptions = subscriptions
        self._webhooks = webhooks
        self._limiter = limiter

    @property
    def subscriptions(self):
        if self._subscriptions is None:
            from app.services.subscription_service import subscription_service
            self._subscriptions = subscription_service
        return self._subscriptions

    @property
    def webhooks(self):
        if self._webhooks is None:
            from app.services.webhook_handler import webhook_handler
            self._webhooks = webhook_handler
        return self._webhooks

    @property
    def limiter(self):
        if self._limiter is None:
            from app.services.attempt_limiter import attempt_limiter
            self._limiter = attempt_limiter
        return self._limiter

    def _select_users(self, *conditions) -> List[Subscription]:
        with _get_db_session() as session:
            return list(session.exec(select(Subscription).where(*conditions)).all())

    def _pending_since(self, sub: Subscription) -> datetime:
        initiated_at = sub.payment_details.get("initiated_at")
        if initiated_at:
            return datetime.fromisoformat(initiated_at)
        return sub.updated_at

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        for sub in self._select_users(
            Subscription.status == S.TRIAL.value,
            Subscription.trial_end_date < now,
        ):
            self._safely(self.subscriptions.deactivate, sub.user_id, "trial_expired", now)
            report.trials_expired += 1

        for sub in self._select_users(
            Subscription.status == S.ACTIVE.value,
            Subscription.end_date.is_not(None),
            Subscription.end_date < now,
        ):
            if not sub.auto_renew:
                self._safely(self.subscriptions.deactivate, sub.user_id, "term_expired", now)
                report.terms_expired += 1
                continue
            try:
                result = await self.subscriptions.renew(sub.user_id, now)
            except KlyaError as e:
                logger.error("Renewal of user %s failed: %s", sub.user_id, e)
                continue
            if result["status"] == S.PENDING_PAYMENT.value:
                report.renewals_initiated += 1
            else:
                report.renewals_failed += 1

        for sub in self._select_users(
            Subscription.status == S.CANCELLED.value,
            Subscription.end_date.is_not(None),
            Subscription.end_date < now,
        ):
            self._safely(self.subscriptions.deactivate, sub.user_id, "cancelled_term_ended", now)
            report.cancellations_expired += 1

        cutoff = now - timedelta(minutes=settings.pending_payment_timeout_minutes)
        for sub in self._select_users(Subscription.status == S.PENDING_PAYMENT.value):
            if self._pending_since(sub) > cutoff:
                continue
            try:
                outcome = await self.subscriptions.resolve_pending(sub.user_id, now)
            except KlyaError as e:
                logger.error("Resolving pending payment of user %s failed: %s", sub.user_id, e)
                continue
            if outcome == "confirmed":
                report.pending_confirmed += 1
            elif outcome == "failed":
                report.pending_failed += 1
            elif outcome == "expired":
                report.pending_expired += 1
            else:
                report.pending_deferred += 1

        report.webhooks_retried = await self.webhooks.retry_pending(now)
        report.buckets_purged = self.limiter.purge_expired(now)

        if report.changed or report.webhooks_retried:
            logger.info("expiration_sweep", extra=vars(report))
        return report

    def _safely(self, fn, *args) -> None:
        try:
            fn(*args)
        except KlyaError as e:
            logger.error("Sweeper step %s%s failed: %s", fn.__name__, args[:2], e)


# Module-level singleton
expiration_sweeper = ExpirationSweeper()


async def sweeper_loop() -> None:
    """Run a sweep every KLYA_SWEEPER_INTERVAL_SECONDS until cancelled."""
    while True:
        try:
            report = await expiration_sweeper.sweep()
            logger.debug("Sweeper: %d subscriptions changed", report.changed)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Expiration sweep failed: %s", e, exc_info=True)
        await asyncio.sleep(settings.sweeper_interval_seconds)
