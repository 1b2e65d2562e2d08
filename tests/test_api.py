"""
HTTP route tests (FastAPI TestClient, lifespan not started).

Auth is overridden per test with the user created by the ``api_user``
fixture; TestAuth exercises the real X-API-Key path.
"""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from app.auth.api_key_auth import AuthenticatedUser, create_api_key, get_current_user, revoke_api_key
from app.config import settings
from app.core.errors import ContentProviderError
from app.main import app
from app.services.content_provider import ContentGenerator, GeneratedContent, get_content_generator

client = TestClient(app)


class FakeGenerator(ContentGenerator):
    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    async def generate(self, prompt, options=None):
        self.calls += 1
        if self.fail:
            raise ContentProviderError(detail="backend exploded")
        return GeneratedContent(text=f"Akwaaba! {prompt}", tokens=3)


@pytest.fixture
def api_user(make_user):
    user_id = make_user(email="kofi@example.com")
    app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(user_id=user_id, key_id="test")
    yield user_id
    app.dependency_overrides.clear()


@pytest.fixture
def generator():
    fake = FakeGenerator()
    app.dependency_overrides[get_content_generator] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_content_generator, None)


def test_root():
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestSubscriptionRoutes:
    def test_plans_are_public(self):
        response = client.get("/api/v1/subscription/plans")
        assert response.status_code == 200
        assert [p["id"] for p in response.json()["plans"]] == ["starter", "professional", "enterprise"]

    def test_current_subscription(self, api_user):
        response = client.get("/api/v1/subscription")
        assert response.status_code == 200
        assert response.json()["status"] == "trial"

    def test_free_upgrade_accepts_camel_case(self, api_user):
        response = client.post("/api/v1/subscription/upgrade", json={"plan": "starter", "billingCycle": "monthly"})
        assert response.status_code == 200
        body = response.json()
        assert body["requires_payment"] is False
        assert body["subscription"]["status"] == "active"

    def test_unknown_plan_is_400(self, api_user):
        response = client.post("/api/v1/subscription/upgrade", json={"plan": "platinum"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "KLY-SUB-002"

    def test_cancel_then_cancel_again_conflicts(self, api_user):
        assert client.post("/api/v1/subscription/cancel").json()["status"] == "cancelled"
        response = client.post("/api/v1/subscription/cancel")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "KLY-SUB-003"

    def test_analytics(self, api_user):
        response = client.get("/api/v1/subscription/analytics")
        assert response.status_code == 200
        assert response.json()["usage"]["content_generations"]["limit"] == 5


class TestUsageRoutes:
    def test_limits(self, api_user):
        response = client.get("/api/v1/usage/limits/content_generations")
        assert response.json() == {"allowed": True, "remaining": 5, "limit": 5}

    def test_camel_case_metric(self, api_user):
        response = client.get("/api/v1/usage/limits/imageGenerations")
        assert response.json()["limit"] == 3

    def test_unknown_metric(self, api_user):
        response = client.get("/api/v1/usage/limits/video")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "KLY-API-001"

    def test_stats_days_bounds(self, api_user):
        assert client.get("/api/v1/usage/stats?days=7").json()["period_days"] == 7
        assert client.get("/api/v1/usage/stats?days=0").status_code == 422


class TestContentRoute:
    def test_sixth_generation_denied(self, api_user, generator):
        for i in range(5):
            response = client.post("/api/v1/content/generate", json={"prompt": f"post {i}"})
            assert response.status_code == 200
        assert response.json()["remaining"] == 0

        response = client.post("/api/v1/content/generate", json={"prompt": "one more"})

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "KLY-USG-001"
        assert error["details"]["remaining"] == 0
        assert error["details"]["limit"] == 5
        assert generator.calls == 5

    def test_provider_failure_not_charged(self, api_user, generator):
        generator.fail = True
        response = client.post("/api/v1/content/generate", json={"prompt": "hello"})
        assert response.status_code == 502

        usage = client.get("/api/v1/usage/limits/content_generations").json()
        assert usage["remaining"] == 5


class TestPaymentRoutes:
    def test_webhook_bad_signature_is_401(self):
        response = client.post(
            "/api/v1/payments/webhook",
            content=b'{"event":"charge.success","data":{"reference":"klya_1_abc"}}',
            headers={"x-paystack-signature": "bad"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "KLY-WHK-001"

    def test_webhook_stored_then_duplicate(self):
        body = json.dumps({
            "event": "charge.success",
            "data": {"id": 7, "reference": "klya_1_nobody", "status": "success", "customer": {"email": "x@y.z"}},
        }).encode()
        signature = hmac.new(settings.paystack_secret_key.encode(), body, hashlib.sha512).hexdigest()
        headers = {"x-paystack-signature": signature, "content-type": "application/json"}

        first = client.post("/api/v1/payments/webhook", content=body, headers=headers)
        second = client.post("/api/v1/payments/webhook", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["status"] == "received"
        assert second.json() == {"status": "duplicate", "event_id": first.json()["event_id"]}

    def test_unknown_callback_method(self):
        response = client.post("/api/v1/payments/webhook/paypal", content=b"{}")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "KLY-PAY-003"

    def test_verify_is_rate_limited(self, api_user, mocker):
        mocker.patch.object(settings, "verify_poll_limit", 2)
        responses = [client.get("/api/v1/payments/verify/klya_1_abc") for _ in range(3)]
        assert [r.status_code for r in responses] == [404, 404, 429]
        assert 0 < int(responses[-1].headers["retry-after"]) <= settings.verify_poll_window_seconds


class TestAuth:
    def test_missing_key(self):
        assert client.get("/api/v1/subscription").status_code == 401

    def test_valid_key(self, make_user):
        user_id = make_user()
        api_key = create_api_key(user_id, label="test")
        response = client.get("/api/v1/subscription", headers={"X-API-Key": api_key})
        assert response.status_code == 200
        assert response.json()["user_id"] == user_id

    def test_wrong_secret(self, make_user):
        user_id = make_user()
        api_key = create_api_key(user_id)
        response = client.get("/api/v1/subscription", headers={"X-API-Key": api_key[:-2] + "xx"})
        assert response.status_code == 401

    def test_revoked_key_rejected_even_when_cached(self, make_user):
        user_id = make_user()
        api_key = create_api_key(user_id)
        headers = {"X-API-Key": api_key}
        assert client.get("/api/v1/subscription", headers=headers).status_code == 200

        key_id = api_key.split("_", 2)[1]
        assert revoke_api_key(key_id) is True
        assert revoke_api_key(key_id) is False
        assert client.get("/api/v1/subscription", headers=headers).status_code == 401


def test_deep_health(api_user):
    response = client.get("/health/deep")
    assert response.status_code == 200
    body = response.json()
    assert body["components"]["database"]["status"] == "ok"
    assert set(body["components"]["payments"]["methods"]) == {"paystack", "mtn_momo", "airteltigo_money"}
