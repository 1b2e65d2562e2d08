"""
Payment Gateway — initiate / verify over every enabled provider.
================================================================

PURPOSE:
    Uniform two-operation facade used by the subscription service, the
    webhook handler and the sweeper:
    1. **initiate(method, request)** — validates the method and request
       variant synchronously (no provider call on a mismatch), then starts
       the charge.
    2. **verify(method, identifier)** — normalized PaymentStatus.

    Adding a provider means adding one PaymentProvider subclass and one
    entry in ``_PROVIDER_FACTORIES``; call sites do not change.

CONFIGURATION (env vars with KLYA_ prefix):
    KLYA_PAYMENT_METHODS_ENABLED — methods offered (default: all three)
    KLYA_PROVIDER_TIMEOUT_SECONDS — per-request HTTP timeout (default 15s)
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from app.config import settings
from app.core.errors import InvalidRequestError, UnsupportedPaymentMethodError

from .base import PaymentHandle, PaymentProvider, PaymentRequest, PaymentStatus
from .mobile_money import AirtelTigoProvider, MtnMomoProvider
from .paystack import PaystackProvider

logger = logging.getLogger(__name__)

__all__ = ["PaymentGateway", "payment_gateway"]

_PROVIDER_FACTORIES = {
    "paystack": PaystackProvider,
    "mtn_momo": MtnMomoProvider,
    "airteltigo_money": AirtelTigoProvider,
}


class PaymentGateway:
    """Dispatches payment operations to the provider for a method."""

    def __init__(self, providers: Optional[Dict[str, PaymentProvider]] = None):
        self._providers: Optional[Dict[str, PaymentProvider]] = providers

    def _build_providers(self) -> Dict[str, PaymentProvider]:
        providers = {}
        for method in settings.payment_methods_enabled:
            factory = _PROVIDER_FACTORIES.get(method)
            if factory is not None:
                providers[method] = factory()
        logger.info("Payment providers ready: %s", sorted(providers))
        return providers

    @property
    def providers(self) -> Dict[str, PaymentProvider]:
        if self._providers is None:
            self._providers = self._build_providers()
        return self._providers

    @property
    def methods(self):
        return sorted(self.providers)

    def provider(self, method: str) -> PaymentProvider:
        provider = self.providers.get(method)
        if provider is None:
            raise UnsupportedPaymentMethodError(
                detail=f"Payment method {method!r} is not enabled",
                public={"payment_method": method, "available": self.methods},
            )
        return provider

    def validate(self, method: str, request: PaymentRequest) -> PaymentProvider:
        provider = self.provider(method)
        if not isinstance(request, provider.request_type):
            raise InvalidRequestError(
                detail=(
                    f"{method} expects {provider.request_type.__name__}, "
                    f"got {type(request).__name__}"
                ),
                public={"payment_method": method},
            )
        if request.amount <= 0:
            raise InvalidRequestError(detail=f"Payment amount must be positive, got {request.amount}")
        return provider

    async def initiate(self, method: str, request: PaymentRequest) -> PaymentHandle:
        provider = self.validate(method, request)
        return await provider.initiate(request)

    async def verify(self, method: str, identifier: str) -> PaymentStatus:
        if not identifier:
            raise InvalidRequestError(detail="Missing payment identifier")
        return await self.provider(method).verify(identifier)

    async def aclose(self) -> None:
        if self._providers is None:
            return
        for provider in self._providers.values():
            await provider.aclose()


# Module-level singleton
payment_gateway = PaymentGateway()
