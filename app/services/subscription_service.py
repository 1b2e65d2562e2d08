"""
Subscription Service — Lifecycle State Machine & Idempotent Confirmation
========================================================================

PURPOSE:
    Owns every write to a user's Subscription row:
    1. **create_initial_subscription()** — 14-day trial on starter limits.
    2. **upgrade()** — free plan → active immediately (no provider call);
       paid plan → initiate payment, snapshot limits/features, pending_payment.
    3. **confirm_payment()** — verify with the provider; on success activate,
       extend end_date by one billing interval and append a paid billing
       entry. Apply-at-most-once per (user_id, transaction_id).
    4. **cancel()** — soft cancel; access continues until end_date.
    5. **get_analytics()** — plan, remaining days, usage vs limits, billing history.
    6. Sweeper primitives: **deactivate()**, **renew()**, **resolve_pending()**.

STATE MACHINE:
    trial           → active | inactive | pending_payment | cancelled
    active          → active (renewal) | pending_payment | cancelled | inactive
    pending_payment → active | inactive | pending_payment (re-initiate) | cancelled
    cancelled       → active (free plan) | pending_payment | inactive
    inactive        → active (free plan) | pending_payment

    After every transition: status=active ⇒ end_date is None or in the
    future; status=trial ⇒ trial_end_date is set.

IDEMPOTENCY:
    billing_history has UNIQUE(user_id, transaction_id). A confirmation whose
    paid entry already exists is a no-op (no provider call). Two concurrent
    confirmations both verify, but only one insert commits; the loser's
    IntegrityError is reported as a duplicate.

RENEWAL ANCHOR:
    end_date = anchor + interval, anchor = confirmation time, except when the
    same plan is paid for again before the current term ends, where
    anchor = current end_date (no paid days are lost, no gap is forgiven).
    A different paid plan starts its term at confirmation.

Provider calls never run while a DB session is open.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.config import settings
from app.core.errors import (
    InvalidRequestError,
    InvalidTransitionError,
    KlyaError,
    NotFoundError,
    PaymentProviderUnavailableError,
    PaymentRejectedError,
)
from app.core.timeutils import utcnow
from app.models.subscription import (
    BillingHistoryEntry,
    BillingStatus,
    Subscription,
    SubscriptionStatus,
)
from app.services.payments import (
    CardPaymentRequest,
    MobileMoneyPaymentRequest,
    PaymentStatus,
)
from app.services.payments.base import to_minor_units
from app.services.plan_catalog import (
    BillingCycle,
    PlanId,
    get_plan,
    interval_for_cycle,
    price_for_cycle,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ConfirmationResult",
    "SubscriptionService",
    "UpgradeResult",
    "subscription_service",
]

S = SubscriptionStatus

TRANSITIONS = {
    S.TRIAL.value: {S.ACTIVE.value, S.INACTIVE.value, S.PENDING_PAYMENT.value, S.CANCELLED.value},
    S.ACTIVE.value: {S.ACTIVE.value, S.PENDING_PAYMENT.value, S.CANCELLED.value, S.INACTIVE.value},
    S.PENDING_PAYMENT.value: {S.ACTIVE.value, S.INACTIVE.value, S.PENDING_PAYMENT.value, S.CANCELLED.value},
    S.CANCELLED.value: {S.ACTIVE.value, S.PENDING_PAYMENT.value, S.INACTIVE.value},
    S.INACTIVE.value: {S.ACTIVE.value, S.PENDING_PAYMENT.value},
}


@dataclass(frozen=True)
class UpgradeResult:
    subscription: Dict[str, Any]
    requires_payment: bool
    authorization_url: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class ConfirmationResult:
    applied: bool
    duplicate: bool
    status: PaymentStatus
    subscription: Dict[str, Any] = field(default_factory=dict)


def _get_db_session():
    from app.core.database import get_session_context
    return get_session_context()


def check_invariants(sub: Subscription, now: datetime) -> List[str]:
    """Return the list of violated subscription invariants (empty when valid)."""
    violations = []
    if sub.status == S.ACTIVE.value and sub.end_date is not None and sub.end_date <= now:
        violations.append("active subscription has an end_date in the past")
    if sub.status == S.TRIAL.value and sub.trial_end_date is None:
        violations.append("trial subscription has no trial_end_date")
    return violations


class SubscriptionService:
    """State machine over the subscriptions table."""

    def __init__(self, gateway=None) -> None:
        self._gateway = gateway

    @property
    def gateway(self):
        if self._gateway is None:
            from app.services.payments import payment_gateway
            self._gateway = payment_gateway
        return self._gateway

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, session, user_id: str) -> Subscription:
        sub = session.exec(select(Subscription).where(Subscription.user_id == user_id)).first()
        if sub is None:
            raise NotFoundError(
                detail=f"No subscription for user {user_id}",
                public={"user_id": user_id},
            )
        return sub

    def _transition(self, sub: Subscription, new_status: str, now: datetime) -> None:
        old_status = sub.status
        if new_status not in TRANSITIONS.get(old_status, set()):
            raise InvalidTransitionError(
                detail=f"Cannot move subscription from {old_status} to {new_status}",
                public={"from": old_status, "to": new_status},
            )
        sub.status = new_status
        sub.updated_at = now
        logger.info(
            "subscription_transition",
            extra={"user_id": sub.user_id, "from": old_status, "to": new_status, "plan": sub.plan},
        )

    def _commit(self, session, sub: Subscription, now: datetime) -> Dict[str, Any]:
        violations = check_invariants(sub, now)
        if violations:
            session.rollback()
            raise KlyaError(
                detail=f"Subscription invariant violated for user {sub.user_id}: {violations}",
                context={"user_id": sub.user_id, "violations": violations},
            )
        session.add(sub)
        session.commit()
        session.refresh(sub)
        return sub.to_dict()

    def _assign_plan(self, sub: Subscription, plan_id: str, billing_cycle: str) -> None:
        plan = get_plan(plan_id)
        sub.plan = plan.id
        sub.billing_cycle = billing_cycle
        sub.set_limits(plan.limits_snapshot())
        sub.set_features(plan.features)

    def _prior_term(self, sub: Subscription) -> Dict[str, Any]:
        """The term a checkout rides on; a re-initiated checkout keeps the first one."""
        if sub.status == S.PENDING_PAYMENT.value:
            details = sub.payment_details
            return {key: details.get(key) for key in ("prior_status", "prior_limits", "prior_features")}
        return {"prior_status": sub.status, "prior_limits": sub.limits, "prior_features": sub.features}

    def _user_contact(self, user_id: str) -> Dict[str, Optional[str]]:
        from app.models.user import User

        with _get_db_session() as session:
            user = session.get(User, user_id)
        if user is None:
            return {"email": None, "phone_number": None}
        return {"email": user.email, "phone_number": user.phone_number}

    def _build_request(
        self,
        method: str,
        amount: Decimal,
        reference_text: str,
        details: Dict[str, Any],
        user_id: str,
    ):
        self.gateway.provider(method)
        contact = self._user_contact(user_id)
        if method == "paystack":
            email = details.get("email") or contact["email"]
            if not email:
                raise InvalidRequestError(detail="An email is required for card payments")
            return CardPaymentRequest(
                amount=amount,
                email=email,
                currency=settings.currency,
                callback_url=settings.payment_callback_url,
            )
        phone = details.get("phone_number") or contact["phone_number"]
        if not phone:
            raise InvalidRequestError(detail="A phone number is required for mobile money payments")
        return MobileMoneyPaymentRequest(
            amount=amount,
            phone_number=phone,
            currency=settings.currency,
            description=reference_text,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_subscription(self, user_id: str) -> Subscription:
        with _get_db_session() as session:
            return self._load(session, user_id)

    def get_billing_history(self, user_id: str) -> List[BillingHistoryEntry]:
        with _get_db_session() as session:
            return list(
                session.exec(
                    select(BillingHistoryEntry)
                    .where(BillingHistoryEntry.user_id == user_id)
                    .order_by(BillingHistoryEntry.date, BillingHistoryEntry.id)
                ).all()
            )

    def get_analytics(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        from app.services.usage_ledger import METRICS, usage_ledger

        now = now or utcnow()
        sub = self.get_subscription(user_id)
        used = usage_ledger.current_period_usage(user_id, now)
        limits = sub.entitled_limits

        usage = {}
        for metric in METRICS:
            limit = int(limits.get(metric, 0))
            usage[metric] = {
                "used": used.get(metric, 0),
                "limit": limit,
                "remaining": -1 if limit == -1 else max(0, limit - used.get(metric, 0)),
            }

        def _days_until(when: Optional[datetime]) -> Optional[int]:
            if when is None:
                return None
            return max(0, (when - now).days)

        return {
            "current_plan": sub.plan,
            "status": sub.status,
            "billing_cycle": sub.billing_cycle,
            "days_remaining": _days_until(sub.end_date),
            "trial_days_remaining": (
                _days_until(sub.trial_end_date) if sub.status == S.TRIAL.value else None
            ),
            "auto_renew": sub.auto_renew,
            "period_start": usage_ledger.billing_period_start(now).isoformat(),
            "usage": usage,
            "features": sub.features,
            "billing_history": [e.to_dict() for e in self.get_billing_history(user_id)],
        }

    # ------------------------------------------------------------------
    # Signup
    # ------------------------------------------------------------------

    def create_initial_subscription(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Create the signup trial. Returns the existing row if one already exists."""
        now = now or utcnow()
        plan = get_plan(PlanId.STARTER.value)
        sub = Subscription(
            user_id=user_id,
            plan=plan.id,
            status=S.TRIAL.value,
            billing_cycle=BillingCycle.MONTHLY.value,
            start_date=now,
            trial_end_date=now + timedelta(days=settings.trial_days),
            auto_renew=True,
            created_at=now,
            updated_at=now,
        )
        sub.set_limits(plan.limits_snapshot())
        sub.set_features(plan.features)

        with _get_db_session() as session:
            try:
                result = self._commit(session, sub, now)
            except IntegrityError:
                session.rollback()
                logger.info("Trial subscription already exists for user %s", user_id)
                return self._load(session, user_id).to_dict()
        logger.info("Trial subscription created for user %s (ends %s)", user_id, sub.trial_end_date)
        return result

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    async def upgrade(
        self,
        user_id: str,
        plan_id: str,
        billing_cycle: str = "monthly",
        payment_method: Optional[str] = None,
        payment_details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> UpgradeResult:
        now = now or utcnow()
        plan = get_plan(plan_id)
        interval_for_cycle(billing_cycle)
        details = dict(payment_details or {})

        if plan.is_free:
            with _get_db_session() as session:
                sub = self._load(session, user_id)
                if sub.status == S.PENDING_PAYMENT.value:
                    raise InvalidTransitionError(
                        detail=f"Cannot switch user {user_id} to a free plan while a checkout is open",
                        public={"from": sub.status, "to": S.ACTIVE.value},
                    )
                self._transition(sub, S.ACTIVE.value, now)
                self._assign_plan(sub, plan.id, billing_cycle)
                sub.start_date = now
                sub.end_date = None
                sub.trial_end_date = None
                sub.payment_method = None
                sub.set_payment_details({})
                sub.auto_renew = True
                snapshot = self._commit(session, sub, now)
            return UpgradeResult(subscription=snapshot, requires_payment=False)

        if not payment_method:
            raise InvalidRequestError(detail="payment_method is required for paid plans")

        # Local validation first: no provider call for a request that cannot apply.
        with _get_db_session() as session:
            sub = self._load(session, user_id)
            if S.PENDING_PAYMENT.value not in TRANSITIONS.get(sub.status, set()):
                raise InvalidTransitionError(
                    detail=f"Cannot upgrade from {sub.status}",
                    public={"from": sub.status, "to": S.PENDING_PAYMENT.value},
                )
            # Paying for the same plan again before the term ends extends it.
            extends_term = (
                sub.status == S.ACTIVE.value
                and sub.plan == plan.id
                and sub.end_date is not None
                and sub.end_date > now
            )
        amount = price_for_cycle(plan, billing_cycle)
        request = self._build_request(
            payment_method,
            amount,
            f"KLYA {plan.name} ({billing_cycle})",
            details,
            user_id,
        )
        self.gateway.validate(payment_method, request)

        handle = await self.gateway.initiate(payment_method, request)

        with _get_db_session() as session:
            sub = self._load(session, user_id)
            prior = self._prior_term(sub)
            self._transition(sub, S.PENDING_PAYMENT.value, now)
            self._assign_plan(sub, plan.id, billing_cycle)
            sub.payment_method = payment_method
            sub.auto_renew = True
            sub.set_payment_details({
                **handle.to_details(),
                "phone_number": getattr(request, "phone_number", None),
                "email": getattr(request, "email", None),
                "amount": str(amount),
                "currency": request.currency,
                "billing_cycle": billing_cycle,
                "initiated_at": now.isoformat(),
                "extends_term": True if extends_term else None,
                **prior,
            })
            snapshot = self._commit(session, sub, now)

        logger.info(
            "Upgrade initiated: user=%s plan=%s method=%s transaction_id=%s",
            user_id, plan.id, payment_method, handle.transaction_id,
        )
        return UpgradeResult(
            subscription=snapshot,
            requires_payment=True,
            authorization_url=handle.authorization_url,
            transaction_id=handle.transaction_id,
        )

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def _paid_entry_exists(self, session, user_id: str, transaction_id: str) -> bool:
        entry = session.exec(
            select(BillingHistoryEntry).where(
                BillingHistoryEntry.user_id == user_id,
                BillingHistoryEntry.transaction_id == transaction_id,
                BillingHistoryEntry.status == BillingStatus.PAID.value,
            )
        ).first()
        return entry is not None

    async def confirm_payment(
        self,
        user_id: str,
        transaction_id: str,
        method: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConfirmationResult:
        """
        Verify a payment and, on success, activate the subscription once.

        Safe to call any number of times, concurrently, from webhooks,
        client polling and the sweeper.
        """
        with _get_db_session() as session:
            sub = self._load(session, user_id)
            if self._paid_entry_exists(session, user_id, transaction_id):
                logger.info("Duplicate confirmation ignored: user=%s transaction_id=%s", user_id, transaction_id)
                return ConfirmationResult(
                    applied=False, duplicate=True, status=PaymentStatus.SUCCESS, subscription=sub.to_dict(),
                )
            if sub.payment_transaction_id != transaction_id:
                raise NotFoundError(
                    detail=f"Transaction {transaction_id} does not belong to user {user_id}",
                    public={"transaction_id": transaction_id},
                )
            stored_method = sub.payment_method

        method = method or stored_method
        if method != stored_method:
            raise InvalidRequestError(
                detail=f"Transaction {transaction_id} was initiated with {stored_method}, not {method}",
                public={"payment_method": method},
            )

        status = await self.gateway.verify(method, transaction_id)
        if status != PaymentStatus.SUCCESS:
            logger.info(
                "Payment not confirmed: user=%s transaction_id=%s status=%s",
                user_id, transaction_id, status.value,
            )
            return ConfirmationResult(
                applied=False, duplicate=False, status=status, subscription=self.get_subscription(user_id).to_dict(),
            )

        return self._apply_confirmation(user_id, transaction_id, now or utcnow())

    def _apply_confirmation(self, user_id: str, transaction_id: str, now: datetime) -> ConfirmationResult:
        with _get_db_session() as session:
            sub = self._load(session, user_id)
            existing = session.exec(
                select(BillingHistoryEntry).where(
                    BillingHistoryEntry.user_id == user_id,
                    BillingHistoryEntry.transaction_id == transaction_id,
                )
            ).first()
            if existing is not None and existing.status == BillingStatus.PAID.value:
                return ConfirmationResult(
                    applied=False, duplicate=True, status=PaymentStatus.SUCCESS, subscription=sub.to_dict(),
                )

            details = sub.payment_details
            cycle = details.get("billing_cycle") or sub.billing_cycle
            renewing_early = (
                sub.end_date is not None
                and sub.end_date > now
                and (sub.status == S.ACTIVE.value or bool(details.get("extends_term")))
            )
            anchor = sub.end_date if renewing_early else now

            self._transition(sub, S.ACTIVE.value, now)
            sub.end_date = anchor + interval_for_cycle(cycle)
            sub.trial_end_date = None
            if not renewing_early:
                sub.start_date = now

            amount = Decimal(details.get("amount") or price_for_cycle(get_plan(sub.plan), cycle))
            if existing is None:
                session.add(BillingHistoryEntry(
                    subscription_id=sub.id,
                    user_id=user_id,
                    date=now,
                    amount_minor=to_minor_units(amount),
                    currency=details.get("currency") or settings.currency,
                    status=BillingStatus.PAID.value,
                    transaction_id=transaction_id,
                    payment_method=sub.payment_method or "",
                    plan=sub.plan,
                ))
            else:
                # A sweeper-recorded failure later reported as paid.
                existing.status = BillingStatus.PAID.value
                existing.date = now
                session.add(existing)

            try:
                snapshot = self._commit(session, sub, now)
            except IntegrityError:
                session.rollback()
                logger.info("Concurrent confirmation won for user=%s transaction_id=%s", user_id, transaction_id)
                return ConfirmationResult(
                    applied=False,
                    duplicate=True,
                    status=PaymentStatus.SUCCESS,
                    subscription=self._load(session, user_id).to_dict(),
                )

        logger.info(
            "Payment confirmed: user=%s transaction_id=%s plan=%s end_date=%s",
            user_id, transaction_id, snapshot["plan"], snapshot["end_date"],
        )
        return ConfirmationResult(applied=True, duplicate=False, status=PaymentStatus.SUCCESS, subscription=snapshot)

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        with _get_db_session() as session:
            sub = self._load(session, user_id)
            self._transition(sub, S.CANCELLED.value, now)
            sub.auto_renew = False
            if sub.end_date is None and sub.trial_end_date is not None:
                # Cancelled trials keep access until the trial would have ended.
                sub.end_date = sub.trial_end_date
            return self._commit(session, sub, now)

    # ------------------------------------------------------------------
    # Sweeper primitives
    # ------------------------------------------------------------------

    def deactivate(self, user_id: str, reason: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        with _get_db_session() as session:
            sub = self._load(session, user_id)
            self._transition(sub, S.INACTIVE.value, now)
            logger.info("Subscription deactivated: user=%s reason=%s", user_id, reason)
            return self._commit(session, sub, now)

    def record_failed_payment(self, user_id: str, transaction_id: str, now: Optional[datetime] = None) -> bool:
        """Append a failed billing entry. Returns False if one already exists."""
        now = now or utcnow()
        with _get_db_session() as session:
            sub = self._load(session, user_id)
            details = sub.payment_details
            session.add(BillingHistoryEntry(
                subscription_id=sub.id,
                user_id=user_id,
                date=now,
                amount_minor=to_minor_units(Decimal(details.get("amount") or "0")),
                currency=details.get("currency") or settings.currency,
                status=BillingStatus.FAILED.value,
                transaction_id=transaction_id,
                payment_method=sub.payment_method or "",
                plan=sub.plan,
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    async def renew(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Re-charge a lapsed auto-renewing term with its last payment method.

        Success → pending_payment (confirmed later like any upgrade).
        Any failure → inactive; a lapsed term never stays active.
        """
        now = now or utcnow()
        with _get_db_session() as session:
            sub = self._load(session, user_id)
            method = sub.payment_method
            plan_id = sub.plan
            cycle = sub.billing_cycle
            details = sub.payment_details

        if not method:
            return self.deactivate(user_id, "renewal_without_payment_method", now)

        try:
            plan = get_plan(plan_id)
            amount = price_for_cycle(plan, cycle)
            request = self._build_request(
                method, amount, f"KLYA {plan.name} renewal ({cycle})", details, user_id,
            )
            handle = await self.gateway.initiate(method, request)
        except KlyaError as e:
            logger.warning("Auto-renewal failed for user %s via %s: %s", user_id, method, e)
            return self.deactivate(user_id, "renewal_failed", now)

        with _get_db_session() as session:
            sub = self._load(session, user_id)
            prior = self._prior_term(sub)
            self._transition(sub, S.PENDING_PAYMENT.value, now)
            sub.set_payment_details({
                **handle.to_details(),
                "phone_number": getattr(request, "phone_number", None),
                "email": getattr(request, "email", None),
                "amount": str(amount),
                "currency": request.currency,
                "billing_cycle": cycle,
                "initiated_at": now.isoformat(),
                "renewal": True,
                **prior,
            })
            snapshot = self._commit(session, sub, now)
        logger.info("Auto-renewal initiated: user=%s transaction_id=%s", user_id, handle.transaction_id)
        return snapshot

    async def resolve_pending(self, user_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Settle a stale pending_payment with a single verify.

        Returns the outcome ("confirmed", "failed", "expired") or None when
        the provider is unavailable and the row is left for the next sweep.
        """
        now = now or utcnow()
        with _get_db_session() as session:
            sub = self._load(session, user_id)
            method = sub.payment_method
            transaction_id = sub.payment_transaction_id

        if not method or not transaction_id:
            self.deactivate(user_id, "pending_without_transaction", now)
            return "expired"

        try:
            status = await self.gateway.verify(method, transaction_id)
        except PaymentProviderUnavailableError as e:
            logger.warning("Pending payment check deferred for user %s: %s", user_id, e)
            return None
        except PaymentRejectedError as e:
            logger.info("Pending payment rejected on verify for user %s: %s", user_id, e)
            status = PaymentStatus.FAILED

        if status == PaymentStatus.SUCCESS:
            self._apply_confirmation(user_id, transaction_id, now)
            return "confirmed"
        if status == PaymentStatus.FAILED:
            self.record_failed_payment(user_id, transaction_id, now)
            self.deactivate(user_id, "payment_failed", now)
            return "failed"
        self.deactivate(user_id, "payment_timeout", now)
        return "expired"


# Module-level singleton
subscription_service = SubscriptionService()
