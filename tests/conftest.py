"""
Pytest configuration for KLYA entitlement tests.
Sets environment variables before any app import: provider secrets for all
three payment rails, a fixed API-key HMAC secret and a temp SQLite database.
"""

import os
import tempfile

_test_data_dir = tempfile.mkdtemp(prefix="klya_test_")
os.environ.setdefault("KLYA_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")
os.environ.setdefault("KLYA_APIKEY_HMAC_SECRET", "test-hmac-secret")
os.environ.setdefault("KLYA_PAYSTACK_SECRET_KEY", "sk_test_paystack")
os.environ.setdefault("KLYA_MTN_API_KEY", "mtn-key")
os.environ.setdefault("KLYA_MTN_API_SECRET", "mtn-secret")
os.environ.setdefault("KLYA_MTN_CALLBACK_SECRET", "mtn-callback-secret")
os.environ.setdefault("KLYA_AIRTELTIGO_API_KEY", "at-key")
os.environ.setdefault("KLYA_AIRTELTIGO_API_SECRET", "at-secret")
os.environ.setdefault("KLYA_AIRTELTIGO_CALLBACK_SECRET", "at-callback-secret")

from uuid import uuid4

import httpx
import pytest
from sqlmodel import SQLModel, select

from app.core.database import get_engine, get_session_context

# Import all models so their tables are registered on SQLModel.metadata
from app.models.user import User, UserAPIKey  # noqa: F401
from app.models.subscription import BillingHistoryEntry, Subscription  # noqa: F401
from app.models.usage import UsageEvent, UsageRecord  # noqa: F401
from app.models.webhook import RateLimitBucket, WebhookEvent  # noqa: F401

SQLModel.metadata.create_all(get_engine())

# Load error registry so KlyaError returns correct HTTP status codes
from app.core.errors.registry import error_registry
error_registry.load()

from app.auth.api_key_auth import api_key_cache
from app.core.timeutils import utcnow
from app.services.payments import (
    AirtelTigoProvider,
    MtnMomoProvider,
    PaymentGateway,
    PaystackProvider,
)
from app.services.subscription_service import SubscriptionService, subscription_service


@pytest.fixture(autouse=True)
def _clean_tables():
    """Every test starts from empty tables."""
    yield
    with get_engine().begin() as conn:
        for table in reversed(SQLModel.metadata.sorted_tables):
            conn.execute(table.delete())
    api_key_cache.clear()


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)


@pytest.fixture
def make_user():
    """Factory: create a user (and by default its 14-day trial). Returns the user id."""

    def _make(email=None, phone_number=None, with_subscription=True, now=None):
        user = User(email=email or f"{uuid4().hex[:10]}@example.com", phone_number=phone_number)
        with get_session_context() as session:
            session.add(user)
            session.commit()
            session.refresh(user)
        if with_subscription:
            subscription_service.create_initial_subscription(user.id, now=now)
        return user.id

    return _make


@pytest.fixture
def update_subscription():
    """Write arbitrary subscription fields directly, bypassing the state machine."""

    def _update(user_id, limits=None, payment_details=None, **fields):
        with get_session_context() as session:
            sub = session.exec(select(Subscription).where(Subscription.user_id == user_id)).one()
            for name, value in fields.items():
                setattr(sub, name, value)
            if limits is not None:
                sub.set_limits(limits)
            if payment_details is not None:
                sub.set_payment_details(payment_details)
            session.add(sub)
            session.commit()
            session.refresh(sub)
            return sub

    return _update


@pytest.fixture
def load_subscription():
    def _load(user_id):
        with get_session_context() as session:
            return session.exec(select(Subscription).where(Subscription.user_id == user_id)).one()

    return _load


@pytest.fixture
def billing_entries():
    def _entries(user_id):
        with get_session_context() as session:
            return list(
                session.exec(
                    select(BillingHistoryEntry).where(BillingHistoryEntry.user_id == user_id)
                ).all()
            )

    return _entries


def _unexpected_call(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected provider call: {request.method} {request.url}")


@pytest.fixture
def gateway():
    """Real providers on a transport that fails on any HTTP call.

    Tests patch ``initiate`` / ``verify`` on the provider they exercise.
    """
    client = httpx.AsyncClient(transport=httpx.MockTransport(_unexpected_call))
    return PaymentGateway(providers={
        "paystack": PaystackProvider(base_url="https://paystack.test", client=client),
        "mtn_momo": MtnMomoProvider(base_url="https://momo.test", client=client),
        "airteltigo_money": AirtelTigoProvider(base_url="https://airteltigo.test", client=client),
    })


@pytest.fixture
def service(gateway):
    return SubscriptionService(gateway=gateway)
