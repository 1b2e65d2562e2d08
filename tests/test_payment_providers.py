"""
Payment provider tests over httpx.MockTransport.

Covers request shape, status normalization, signature checks, callback
parsing, the 401 token refresh and the error mapping
(timeout / 5xx → unavailable, 4xx → rejected).
"""

import hashlib
import hmac
import json
import re
from decimal import Decimal

import httpx
import pytest

from app.core.errors import InvalidRequestError, PaymentProviderUnavailableError, PaymentRejectedError
from app.services.payments import (
    AirtelTigoProvider,
    CardPaymentRequest,
    MobileMoneyPaymentRequest,
    MtnMomoProvider,
    PaymentStatus,
    PaystackProvider,
    generate_reference,
    normalize_status,
)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _paystack(handler):
    return PaystackProvider(secret_key="sk_test", base_url="https://paystack.test", client=_client(handler))


def _mtn(handler):
    return MtnMomoProvider(
        api_key="mtn-key",
        api_secret="mtn-secret",
        base_url="https://momo.test",
        callback_secret="cb-secret",
        target_environment="sandbox",
        client=_client(handler),
    )


def _airteltigo(handler):
    return AirtelTigoProvider(
        api_key="at-key",
        api_secret="at-secret",
        base_url="https://airteltigo.test",
        callback_secret="cb-secret",
        client=_client(handler),
    )


CARD = CardPaymentRequest(amount=Decimal("99"), email="ama@example.com", reference="klya_1_abc")
MOMO = MobileMoneyPaymentRequest(amount=Decimal("99"), phone_number="+233241234567", reference="klya_2_def")


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_reference_format(self):
        assert re.fullmatch(r"klya_\d{13}_[0-9a-f]{16}", generate_reference())

    def test_references_are_unique(self):
        assert len({generate_reference() for _ in range(100)}) == 100

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("SUCCESSFUL", PaymentStatus.SUCCESS),
            ("success", PaymentStatus.SUCCESS),
            ("Completed", PaymentStatus.SUCCESS),
            ("FAILED", PaymentStatus.FAILED),
            ("rejected", PaymentStatus.FAILED),
            ("PENDING", PaymentStatus.PENDING),
            (None, PaymentStatus.PENDING),
        ],
    )
    def test_normalize_status(self, raw, expected):
        assert normalize_status(raw) == expected


# ---------------------------------------------------------------------------
# Paystack
# ---------------------------------------------------------------------------

class TestPaystack:
    @pytest.mark.asyncio
    async def test_initialize(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "data": {"authorization_url": "https://checkout.paystack.com/x", "reference": "klya_1_abc"},
            })

        handle = await _paystack(handler).initiate(CARD)

        assert seen["path"] == "/transaction/initialize"
        assert seen["auth"] == "Bearer sk_test"
        assert seen["body"]["amount"] == 9900
        assert seen["body"]["channels"] == ["card", "bank", "mobile_money"]
        assert handle.transaction_id == handle.reference == "klya_1_abc"
        assert handle.authorization_url == "https://checkout.paystack.com/x"
        assert handle.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("success", PaymentStatus.SUCCESS),
            ("failed", PaymentStatus.FAILED),
            ("abandoned", PaymentStatus.FAILED),
            ("reversed", PaymentStatus.FAILED),
            ("ongoing", PaymentStatus.PENDING),
        ],
    )
    async def test_verify_status_mapping(self, raw, expected):
        def handler(request):
            assert request.url.path == "/transaction/verify/klya_1_abc"
            return httpx.Response(200, json={"status": True, "data": {"status": raw}})

        assert await _paystack(handler).verify("klya_1_abc") == expected

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(PaymentProviderUnavailableError):
            await _paystack(handler).verify("klya_1_abc")

    @pytest.mark.asyncio
    async def test_5xx_is_unavailable(self):
        with pytest.raises(PaymentProviderUnavailableError):
            await _paystack(lambda r: httpx.Response(503, text="busy")).initiate(CARD)

    @pytest.mark.asyncio
    async def test_4xx_is_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"status": False, "message": "Invalid email"})

        with pytest.raises(PaymentRejectedError) as exc_info:
            await _paystack(handler).initiate(CARD)
        assert exc_info.value.public["message"] == "Invalid email"

    def test_signature(self):
        provider = _paystack(lambda r: httpx.Response(500))
        body = b'{"event":"charge.success","data":{"reference":"klya_1_abc"}}'
        signature = hmac.new(b"sk_test", body, hashlib.sha512).hexdigest()

        assert provider.verify_signature(body, signature) is True
        assert provider.verify_signature(body + b" ", signature) is False
        assert provider.verify_signature(body, None) is False

    def test_parse_callback(self):
        provider = _paystack(lambda r: httpx.Response(500))
        event = provider.parse_callback({
            "event": "charge.success",
            "data": {
                "id": 302961,
                "reference": "klya_1_abc",
                "status": "success",
                "customer": {"email": "ama@example.com"},
            },
        })
        assert event.event_key == "charge.success:302961"
        assert event.status == PaymentStatus.SUCCESS
        assert event.email == "ama@example.com"
        assert event.transaction_id == "klya_1_abc"

    def test_parse_callback_requires_reference(self):
        provider = _paystack(lambda r: httpx.Response(500))
        with pytest.raises(InvalidRequestError):
            provider.parse_callback({"event": "charge.success", "data": {}})


# ---------------------------------------------------------------------------
# MTN MoMo
# ---------------------------------------------------------------------------

class MomoServer:
    """Minimal MTN Collection API stand-in."""

    def __init__(self, verify_responses=None):
        self.token_calls = 0
        self.requests = []
        self.verify_responses = list(verify_responses or [])

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path == "/collection/token/":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"tok{self.token_calls}", "expires_in": 3600})
        if request.method == "POST":
            return httpx.Response(202)
        return self.verify_responses.pop(0)


class TestMtnMomo:
    @pytest.mark.asyncio
    async def test_request_to_pay(self):
        server = MomoServer()
        handle = await _mtn(server).initiate(MOMO)

        token_req, pay_req = server.requests
        assert token_req.headers["Ocp-Apim-Subscription-Key"] == "mtn-key"
        assert token_req.headers["Authorization"].startswith("Basic ")
        assert pay_req.url.path == "/collection/v1_0/requesttopay"
        assert pay_req.headers["Authorization"] == "Bearer tok1"
        assert pay_req.headers["X-Target-Environment"] == "sandbox"
        assert handle.transaction_id == pay_req.headers["X-Reference-Id"]
        assert handle.reference == "klya_2_def"

        body = json.loads(pay_req.content)
        assert body["payer"] == {"partyIdType": "MSISDN", "partyId": "233241234567"}
        assert body["amount"] == "99.00"

    @pytest.mark.asyncio
    async def test_token_cached_across_calls(self):
        server = MomoServer(verify_responses=[httpx.Response(200, json={"status": "PENDING"})])
        provider = _mtn(server)
        handle = await provider.initiate(MOMO)
        assert await provider.verify(handle.transaction_id) == PaymentStatus.PENDING
        assert server.token_calls == 1

    @pytest.mark.asyncio
    async def test_401_refreshes_token_once(self):
        server = MomoServer(verify_responses=[
            httpx.Response(401, json={"message": "token expired"}),
            httpx.Response(200, json={"status": "SUCCESSFUL"}),
        ])
        provider = _mtn(server)

        assert await provider.verify("ref-id") == PaymentStatus.SUCCESS
        assert server.token_calls == 2
        assert server.requests[-1].headers["Authorization"] == "Bearer tok2"

    @pytest.mark.asyncio
    async def test_second_401_is_rejected(self):
        server = MomoServer(verify_responses=[httpx.Response(401), httpx.Response(401)])
        with pytest.raises(PaymentRejectedError):
            await _mtn(server).verify("ref-id")
        assert server.token_calls == 2

    @pytest.mark.asyncio
    async def test_token_failure_is_unavailable(self):
        with pytest.raises(PaymentProviderUnavailableError):
            await _mtn(lambda r: httpx.Response(401, json={})).verify("ref-id")

    def test_callback_signature_and_parse(self):
        provider = _mtn(MomoServer())
        payload = {
            "referenceId": "5b0c1c1e",
            "externalId": "klya_2_def",
            "status": "SUCCESSFUL",
            "payer": {"partyIdType": "MSISDN", "partyId": "233241234567"},
        }
        body = json.dumps(payload).encode()
        signature = hmac.new(b"cb-secret", body, hashlib.sha256).hexdigest()
        assert provider.verify_signature(body, signature) is True
        assert provider.verify_signature(body, "0" * 64) is False

        event = provider.parse_callback(payload)
        assert event.transaction_id == "5b0c1c1e"
        assert event.phone_number == "+233241234567"
        assert event.status == PaymentStatus.SUCCESS


# ---------------------------------------------------------------------------
# AirtelTigo Money
# ---------------------------------------------------------------------------

class TestAirtelTigo:
    @pytest.mark.asyncio
    async def test_request_and_status(self):
        calls = []

        def handler(request):
            calls.append(request)
            if request.url.path == "/oauth/token":
                assert b"grant_type=client_credentials" in request.content
                return httpx.Response(200, json={"access_token": "at-tok", "expires_in": 7200})
            if request.url.path == "/payments/request":
                return httpx.Response(200, json={"success": True, "transactionId": "AT123"})
            assert request.url.path == "/payments/status/AT123"
            return httpx.Response(200, json={"status": "completed"})

        provider = _airteltigo(handler)
        handle = await provider.initiate(MOMO)
        status = await provider.verify(handle.transaction_id)

        assert handle.transaction_id == "AT123"
        assert status == PaymentStatus.SUCCESS
        assert calls[1].headers["Authorization"] == "Bearer at-tok"
        assert json.loads(calls[1].content)["phoneNumber"] == "+233241234567"

    @pytest.mark.asyncio
    async def test_declined_request_is_rejected(self):
        def handler(request):
            if request.url.path == "/oauth/token":
                return httpx.Response(200, json={"access_token": "at-tok"})
            return httpx.Response(200, json={"success": False, "message": "insufficient funds"})

        with pytest.raises(PaymentRejectedError):
            await _airteltigo(handler).initiate(MOMO)

    def test_parse_callback(self):
        provider = _airteltigo(lambda r: httpx.Response(500))
        event = provider.parse_callback({
            "transactionId": "AT123",
            "reference": "klya_2_def",
            "status": "FAILED",
            "phoneNumber": "+233271234567",
        })
        assert event.event_key == "AT123:failed"
        assert event.status == PaymentStatus.FAILED
        assert event.phone_number == "+233271234567"
