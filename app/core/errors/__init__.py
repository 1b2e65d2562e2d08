"""
Error code system.

KlyaError is the base exception for all structured errors.
Raise it (or one of the typed subclasses below) with an error code from the
registry, and the error middleware will produce a structured JSON response.

Usage:
    from app.core.errors import KlyaError
    raise KlyaError("KLY-PAY-001", detail="paystack timed out after 15s")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^KLY-[A-Z]{2,6}-\d{3}$")


class KlyaError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "KLY-PAY-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
        public: Key-value data safe to return to the client.
    """

    default_code: str = "KLY-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
        public: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        self.public = public or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class InvalidRequestError(KlyaError):
    default_code = "KLY-API-001"


class TooManyRequestsError(KlyaError):
    default_code = "KLY-API-002"


class NotFoundError(KlyaError):
    default_code = "KLY-SUB-001"


class InvalidPlanError(KlyaError):
    default_code = "KLY-SUB-002"


class InvalidTransitionError(KlyaError):
    default_code = "KLY-SUB-003"


class LimitExceededError(KlyaError):
    """Entitlement denied; carries remaining/limit for the UI."""

    default_code = "KLY-USG-001"

    def __init__(self, metric: str, remaining: int, limit: int, reason: str | None = None) -> None:
        self.metric = metric
        self.remaining = remaining
        self.limit = limit
        super().__init__(
            detail=f"{metric}: limit {limit} reached ({reason or 'quota'})",
            context={"metric": metric, "limit": limit, "reason": reason},
            public={"metric": metric, "remaining": remaining, "limit": limit, "reason": reason},
        )


class FeatureNotAvailableError(KlyaError):
    default_code = "KLY-USG-002"


class PaymentProviderUnavailableError(KlyaError):
    """Network error, timeout or 5xx from a payment provider (retryable)."""

    default_code = "KLY-PAY-001"


class PaymentRejectedError(KlyaError):
    """Provider explicitly declined the request (terminal for this attempt)."""

    default_code = "KLY-PAY-002"


class UnsupportedPaymentMethodError(KlyaError):
    default_code = "KLY-PAY-003"


class InvalidWebhookSignatureError(KlyaError):
    default_code = "KLY-WHK-001"


class ContentProviderError(KlyaError):
    default_code = "KLY-GEN-001"


class ConfigurationError(KlyaError):
    default_code = "KLY-CFG-001"
