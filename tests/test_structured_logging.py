"""
Tests for the structlog processors: context injection and redaction.
"""

from app.core.structured_logging import (
    SERVICE_NAME,
    _inject_context,
    _redact_secrets,
    mask_phone,
    request_id_var,
    user_id_var,
)


class TestRedaction:
    def test_sensitive_keys_redacted(self):
        out = _redact_secrets(None, "info", {
            "event": "paystack call",
            "paystack_secret_key": "sk_live_123",
            "x-callback-signature": "abc",
            "attempts": 3,
        })
        assert out["paystack_secret_key"] == "[REDACTED]"
        assert out["x-callback-signature"] == "[REDACTED]"
        assert out["attempts"] == 3

    def test_api_keys_masked_in_messages(self):
        out = _redact_secrets(None, "info", {"event": "bad key kl_ab12cd34_s3cr3t-value"})
        assert out["event"] == "bad key kl_[REDACTED]"

    def test_phone_numbers_masked(self):
        assert mask_phone("payer +233241234567") == "payer ***24****567"
        assert mask_phone("payer 0241234567") == "payer ***24****567"
        assert mask_phone("amount 99.00") == "amount 99.00"


class TestContext:
    def test_contextvars_injected(self):
        rid = request_id_var.set("req-1")
        uid = user_id_var.set("user-1")
        try:
            out = _inject_context(None, "info", {"event": "x"})
        finally:
            request_id_var.reset(rid)
            user_id_var.reset(uid)

        assert out["service"] == SERVICE_NAME
        assert out["request_id"] == "req-1"
        assert out["user_id"] == "user-1"
        assert "correlation_id" not in out

    def test_explicit_user_id_wins(self):
        uid = user_id_var.set("user-1")
        try:
            out = _inject_context(None, "info", {"event": "x", "user_id": "user-2"})
        finally:
            user_id_var.reset(uid)
        assert out["user_id"] == "user-2"
