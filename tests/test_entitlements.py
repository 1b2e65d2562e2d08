"""
Entitlement Checker Tests
=========================

Coverage:
  - Limit boundary (4 used → 1 left, 5 used → denied with remaining 0)
  - Unlimited limits reported as -1/-1
  - Access denial for expired trials, lapsed cancellations, inactive rows
  - Open checkouts: access only while the prior term runs, with its limits
  - Feature flags from the snapshot
  - guard(): records only after a successful body, never when denied
  - Strict mode: concurrent calls from one user never overshoot
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.config import settings
from app.core.errors import FeatureNotAvailableError, LimitExceededError, NotFoundError
from app.services.entitlements import entitlement_service
from app.services.payments import PaymentHandle
from app.services.usage_ledger import usage_ledger

METRIC = "content_generations"


def _use(user_id, n, metric=METRIC):
    for _ in range(n):
        usage_ledger.record_usage(user_id, metric)


class TestCheckUsageLimit:
    def test_fresh_trial(self, make_user):
        user_id = make_user()
        result = entitlement_service.check_usage_limit(user_id, METRIC)
        assert (result.allowed, result.remaining, result.limit) == (True, 5, 5)

    def test_one_below_limit(self, make_user):
        user_id = make_user()
        _use(user_id, 4)
        result = entitlement_service.check_usage_limit(user_id, METRIC)
        assert (result.allowed, result.remaining, result.limit) == (True, 1, 5)

    def test_at_limit_denied(self, make_user):
        user_id = make_user()
        _use(user_id, 5)
        result = entitlement_service.check_usage_limit(user_id, METRIC)
        assert result.to_dict() == {"allowed": False, "remaining": 0, "limit": 5}
        assert result.reason == "limit_reached"

    def test_unlimited(self, make_user, update_subscription, now):
        user_id = make_user()
        update_subscription(
            user_id,
            status="active",
            plan="professional",
            end_date=now + timedelta(days=30),
            limits={METRIC: -1},
        )
        _use(user_id, 50)
        result = entitlement_service.check_usage_limit(user_id, METRIC)
        assert (result.allowed, result.remaining, result.limit) == (True, -1, -1)

    def test_expired_trial_denied(self, make_user, update_subscription, now):
        user_id = make_user()
        update_subscription(user_id, trial_end_date=now - timedelta(days=1))
        result = entitlement_service.check_usage_limit(user_id, METRIC)
        assert (result.allowed, result.remaining) == (False, 0)
        assert result.reason == "trial_expired"

    def test_cancelled_keeps_access_until_end_date(self, make_user, update_subscription, now):
        user_id = make_user()
        update_subscription(user_id, status="cancelled", end_date=now + timedelta(days=3))
        assert entitlement_service.check_usage_limit(user_id, METRIC).allowed is True

        update_subscription(user_id, end_date=now - timedelta(seconds=1))
        result = entitlement_service.check_usage_limit(user_id, METRIC)
        assert result.allowed is False
        assert result.reason == "subscription_cancelled"

    def test_inactive_denied(self, make_user, update_subscription):
        user_id = make_user()
        update_subscription(user_id, status="inactive")
        result = entitlement_service.check_usage_limit(user_id, METRIC)
        assert (result.allowed, result.remaining, result.reason) == (False, 0, "subscription_inactive")

    def test_missing_subscription(self, make_user):
        user_id = make_user(with_subscription=False)
        with pytest.raises(NotFoundError):
            entitlement_service.check_usage_limit(user_id, METRIC)


class TestPendingPayment:
    """An open checkout rides on the term the user already had."""

    @pytest.fixture
    def paystack(self, gateway, mocker):
        provider = gateway.provider("paystack")
        mocker.patch.object(
            provider, "initiate", AsyncMock(return_value=PaymentHandle(transaction_id="klya_1_abc", reference="klya_1_abc")),
        )
        return provider

    @pytest.mark.asyncio
    async def test_checkout_from_inactive_grants_nothing(self, service, make_user, update_subscription, paystack, now):
        user_id = make_user()
        update_subscription(user_id, status="inactive", trial_end_date=now - timedelta(days=1))

        await service.upgrade(user_id, "enterprise", payment_method="paystack", now=now)

        result = entitlement_service.check_usage_limit(user_id, "image_generations")
        assert (result.allowed, result.remaining, result.reason) == (False, 0, "payment_pending")
        assert result.limit == 3
        assert entitlement_service.check_feature(user_id, "image_generation") is False

    @pytest.mark.asyncio
    async def test_checkout_from_expired_trial_grants_nothing(self, service, make_user, update_subscription, paystack, now):
        user_id = make_user()
        update_subscription(user_id, trial_end_date=now - timedelta(seconds=1))

        await service.upgrade(user_id, "enterprise", payment_method="paystack", now=now)

        result = entitlement_service.check_usage_limit(user_id, "image_generations")
        assert (result.allowed, result.reason) == (False, "payment_pending")

    @pytest.mark.asyncio
    async def test_checkout_during_trial_keeps_trial_limits(self, service, make_user, paystack, now):
        user_id = make_user()
        await service.upgrade(user_id, "enterprise", payment_method="paystack", now=now)

        result = entitlement_service.check_usage_limit(user_id, METRIC)
        assert (result.allowed, result.remaining, result.limit) == (True, 5, 5)
        assert entitlement_service.check_feature(user_id, "image_generation") is False

    @pytest.mark.asyncio
    async def test_checkout_during_paid_term_keeps_current_limits(
        self, service, make_user, update_subscription, paystack, now,
    ):
        user_id = make_user()
        update_subscription(
            user_id,
            status="active",
            plan="professional",
            end_date=now + timedelta(days=10),
            trial_end_date=None,
            limits={"image_generations": 20},
        )

        await service.upgrade(user_id, "enterprise", payment_method="paystack", now=now)

        result = entitlement_service.check_usage_limit(user_id, "image_generations")
        assert (result.allowed, result.remaining, result.limit) == (True, 20, 20)

        update_subscription(user_id, end_date=now - timedelta(seconds=1))
        result = entitlement_service.check_usage_limit(user_id, "image_generations")
        assert (result.allowed, result.reason) == (False, "payment_pending")

    @pytest.mark.asyncio
    async def test_reinitiated_checkout_keeps_first_term(self, service, make_user, paystack, load_subscription, now):
        user_id = make_user()
        await service.upgrade(user_id, "enterprise", payment_method="paystack", now=now)
        await service.upgrade(user_id, "professional", payment_method="paystack", now=now)

        details = load_subscription(user_id).payment_details
        assert details["prior_status"] == "trial"
        assert details["prior_limits"]["content_generations"] == 5


class TestFeatures:
    def test_trial_has_content_generation_only(self, make_user):
        user_id = make_user()
        assert entitlement_service.check_feature(user_id, "content_generation") is True
        assert entitlement_service.check_feature(user_id, "api_access") is False

    def test_require_feature_raises(self, make_user):
        user_id = make_user()
        with pytest.raises(FeatureNotAvailableError) as exc_info:
            entitlement_service.require_feature(user_id, "image_generation")
        assert exc_info.value.public == {"feature": "image_generation"}

    def test_no_features_without_access(self, make_user, update_subscription):
        user_id = make_user()
        update_subscription(user_id, status="inactive")
        assert entitlement_service.check_feature(user_id, "content_generation") is False


class TestGuard:
    @pytest.mark.asyncio
    async def test_records_after_success(self, make_user):
        user_id = make_user()
        async with entitlement_service.guard(user_id, METRIC) as ticket:
            ticket.metadata["tokens"] = 42

        assert entitlement_service.check_usage_limit(user_id, METRIC).remaining == 4
        stats = usage_ledger.get_user_stats(user_id, days=1)
        assert stats["totals"]["tokens_used"] == 42

    @pytest.mark.asyncio
    async def test_failed_body_records_nothing(self, make_user):
        user_id = make_user()
        with pytest.raises(RuntimeError):
            async with entitlement_service.guard(user_id, METRIC):
                raise RuntimeError("provider down")
        assert entitlement_service.check_usage_limit(user_id, METRIC).remaining == 5

    @pytest.mark.asyncio
    async def test_sixth_generation_denied_and_not_recorded(self, make_user):
        user_id = make_user()
        for _ in range(5):
            async with entitlement_service.guard(user_id, METRIC):
                pass

        body_ran = False
        with pytest.raises(LimitExceededError) as exc_info:
            async with entitlement_service.guard(user_id, METRIC):
                body_ran = True

        assert body_ran is False
        assert (exc_info.value.remaining, exc_info.value.limit) == (0, 5)
        assert usage_ledger.aggregate_usage(user_id, METRIC, usage_ledger.billing_period_start()) == 5

    @pytest.mark.asyncio
    async def test_strict_mode_never_overshoots(self, make_user, update_subscription, mocker):
        mocker.patch.object(settings, "strict_entitlements", True)
        user_id = make_user()
        update_subscription(user_id, limits={METRIC: 2})

        async def call():
            async with entitlement_service.guard(user_id, METRIC):
                await asyncio.sleep(0.01)

        results = await asyncio.gather(*(call() for _ in range(5)), return_exceptions=True)

        denied = [r for r in results if isinstance(r, LimitExceededError)]
        assert len(denied) == 3
        assert usage_ledger.aggregate_usage(user_id, METRIC, usage_ledger.billing_period_start()) == 2

    @pytest.mark.asyncio
    async def test_default_mode_overshoot_is_bounded(self, make_user, update_subscription, mocker):
        mocker.patch.object(settings, "strict_entitlements", False)
        user_id = make_user()
        update_subscription(user_id, limits={METRIC: 2})

        async def call():
            async with entitlement_service.guard(user_id, METRIC):
                await asyncio.sleep(0.01)

        n = 4
        await asyncio.gather(*(call() for _ in range(n)), return_exceptions=True)

        used = usage_ledger.aggregate_usage(user_id, METRIC, usage_ledger.billing_period_start())
        assert 2 <= used <= 2 + n - 1
