from .base import (
    CallbackEvent,
    CardPaymentRequest,
    MobileMoneyPaymentRequest,
    PaymentHandle,
    PaymentProvider,
    PaymentRequest,
    PaymentStatus,
    generate_reference,
    normalize_status,
)
from .gateway import PaymentGateway, payment_gateway
from .mobile_money import AirtelTigoProvider, MtnMomoProvider
from .paystack import PaystackProvider
from .token_cache import OAuthTokenCache

__all__ = [
    "AirtelTigoProvider",
    "CallbackEvent",
    "CardPaymentRequest",
    "MobileMoneyPaymentRequest",
    "MtnMomoProvider",
    "OAuthTokenCache",
    "PaymentGateway",
    "PaymentHandle",
    "PaymentProvider",
    "PaymentRequest",
    "PaymentStatus",
    "PaystackProvider",
    "generate_reference",
    "normalize_status",
    "payment_gateway",
]
