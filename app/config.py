"""
KLYA Entitlements Configuration
===============================

PURPOSE:
    Pydantic-Settings based configuration for the entitlements backend.
    All settings can be overridden via environment variables (KLYA_ prefix).

    Payment provider secrets are validated once at startup by
    ``validate_payment_config()``; a missing secret for an enabled payment
    method is a fatal configuration error, never a per-request failure.
"""

import logging
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("paystack", "mtn_momo", "airteltigo_money")


class Settings(BaseSettings):
    app_name: str = "KLYA Entitlements"
    debug: bool = False
    environment: str = "production"

    # Auth
    auth_enabled: bool = True
    auth_cache_ttl: int = 300  # seconds
    apikey_hmac_secret: Optional[str] = None

    data_directory: str = "/data"

    # Logging (structlog)
    log_level: str = "info"
    log_format: Literal["json", "console"] = "json"
    log_dir: Optional[str] = None

    # Payments: which rails are offered
    payment_environment: Literal["sandbox", "production"] = "sandbox"
    payment_methods_enabled: List[str] = list(PAYMENT_METHODS)
    currency: str = "GHS"
    provider_timeout_seconds: float = 15.0

    # Paystack (card / bank rail)
    paystack_secret_key: Optional[str] = None
    paystack_base_url: str = "https://api.paystack.co"
    payment_callback_url: str = "http://localhost:3000/dashboard/subscription/callback"

    # MTN Mobile Money
    mtn_api_key: Optional[str] = None
    mtn_api_secret: Optional[str] = None
    mtn_base_url: str = "https://sandbox.momodeveloper.mtn.com"
    mtn_callback_secret: Optional[str] = None

    # AirtelTigo Money
    airteltigo_api_key: Optional[str] = None
    airteltigo_api_secret: Optional[str] = None
    airteltigo_base_url: str = "https://sandbox.airteltigo.com.gh/v1"
    airteltigo_callback_secret: Optional[str] = None

    # Subscription lifecycle
    trial_days: int = 14
    sweeper_interval_seconds: int = 300
    pending_payment_timeout_minutes: int = 60
    webhook_max_attempts: int = 5

    # Entitlements: strict mode serializes a user's metered calls
    strict_entitlements: bool = False

    # Client verify polling
    verify_poll_limit: int = 10
    verify_poll_window_seconds: int = 60

    # Content generation provider (external, black box)
    content_provider_url: str = "http://localhost:8081/v1/generate"
    content_provider_api_key: Optional[str] = None
    content_provider_timeout_seconds: float = 60.0

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    @property
    def mtn_target_environment(self) -> str:
        return "mtnghana" if self.payment_environment == "production" else "sandbox"

    def required_secrets(self) -> dict:
        """Secret setting names required per payment method."""
        return {
            "paystack": ["paystack_secret_key"],
            "mtn_momo": ["mtn_api_key", "mtn_api_secret", "mtn_callback_secret"],
            "airteltigo_money": [
                "airteltigo_api_key",
                "airteltigo_api_secret",
                "airteltigo_callback_secret",
            ],
        }

    def validate_payment_config(self) -> None:
        """Raise ConfigurationError if an enabled payment method lacks secrets."""
        from app.core.errors import ConfigurationError

        unknown = [m for m in self.payment_methods_enabled if m not in PAYMENT_METHODS]
        if unknown:
            raise ConfigurationError(detail=f"Unknown payment methods enabled: {unknown}")

        missing = []
        required = self.required_secrets()
        for method in self.payment_methods_enabled:
            for name in required[method]:
                if not getattr(self, name):
                    missing.append(f"KLYA_{name.upper()}")

        if missing:
            raise ConfigurationError(
                detail=f"Missing payment provider configuration: {', '.join(missing)}",
                context={"missing": missing},
            )
        logger.info(
            "Payment configuration validated: methods=%s environment=%s",
            self.payment_methods_enabled,
            self.payment_environment,
        )

    class Config:
        env_prefix = "KLYA_"
        env_file = ".env"
        extra = "ignore"


settings = Settings()
