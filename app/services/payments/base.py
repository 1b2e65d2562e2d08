"""
Payment Provider Base
=====================

Shared types and the abstract provider interface. Every provider exposes
exactly two operations, ``initiate`` and ``verify``, and normalizes its own
status vocabulary into PaymentStatus.

Request variants form a tagged union: CardPaymentRequest for the card/bank
rail and MobileMoneyPaymentRequest for mobile-money networks. Each provider
declares the variant it accepts in ``request_type``.

HTTP error mapping (applies to every provider):
    timeout / connection error / 5xx  → PaymentProviderUnavailableError
    explicit decline / other 4xx      → PaymentRejectedError
No retries happen here; the sweeper and webhooks retry on their own schedule.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

import httpx

from app.config import settings
from app.core.errors import PaymentProviderUnavailableError, PaymentRejectedError

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


_SUCCESS_STATUSES = {"success", "successful", "completed"}
_FAILED_STATUSES = {"failed", "failure", "abandoned", "reversed", "rejected", "cancelled", "expired"}


def normalize_status(raw: Optional[str]) -> PaymentStatus:
    """Map a provider status string onto pending|success|failed (case-insensitive)."""
    value = (raw or "").strip().lower()
    if value in _SUCCESS_STATUSES:
        return PaymentStatus.SUCCESS
    if value in _FAILED_STATUSES:
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def generate_reference() -> str:
    """Globally unique payment reference: ``klya_{epoch_ms}_{16 hex}``."""
    return f"klya_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def to_minor_units(amount: Decimal) -> int:
    """GHS → pesewas."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CardPaymentRequest:
    amount: Decimal
    email: str
    currency: str = "GHS"
    reference: Optional[str] = None
    callback_url: Optional[str] = None


@dataclass(frozen=True)
class MobileMoneyPaymentRequest:
    amount: Decimal
    phone_number: str
    currency: str = "GHS"
    description: str = "KLYA subscription"
    reference: Optional[str] = None


PaymentRequest = Union[CardPaymentRequest, MobileMoneyPaymentRequest]


@dataclass(frozen=True)
class PaymentHandle:
    """Provider correlation data. ``transaction_id`` is what ``verify`` takes."""

    transaction_id: str
    reference: str
    status: PaymentStatus = PaymentStatus.PENDING
    authorization_url: Optional[str] = None

    def to_details(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "authorization_url": self.authorization_url,
        }


@dataclass(frozen=True)
class CallbackEvent:
    """A provider push, reduced to what the webhook handler needs."""

    provider: str
    event_key: str
    event_type: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None


def hmac_hexdigest(secret: str, body: bytes, digestmod=hashlib.sha256) -> str:
    return hmac.new(secret.encode(), body, digestmod).hexdigest()


def signature_matches(expected: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected, provided.strip().lower())


class PaymentProvider(ABC):
    """Abstract payment provider with a shared httpx client and error mapping."""

    method: str = ""
    request_type: type = object
    signature_header: str = "x-callback-signature"

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.provider_timeout_seconds,
        )

    @abstractmethod
    async def initiate(self, request: PaymentRequest) -> PaymentHandle:
        """Start a charge. Returns a pending handle."""

    @abstractmethod
    async def verify(self, identifier: str) -> PaymentStatus:
        """Current normalized status of a previously initiated charge."""

    @abstractmethod
    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Authenticate a provider push before its payload is trusted."""

    @abstractmethod
    def parse_callback(self, payload: Dict[str, Any]) -> CallbackEvent:
        """Reduce an authenticated push payload to a CallbackEvent."""

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("%s %s %s timed out: %s", self.method, method, path, e)
            raise PaymentProviderUnavailableError(
                detail=f"{self.method} timed out on {method} {path}",
                context={"provider": self.method},
            ) from e
        except httpx.HTTPError as e:
            logger.warning("%s %s %s failed: %s", self.method, method, path, e)
            raise PaymentProviderUnavailableError(
                detail=f"{self.method} unreachable on {method} {path}: {e}",
                context={"provider": self.method},
            ) from e

        if resp.status_code >= 500:
            logger.warning("%s %s %s returned HTTP %d", self.method, method, path, resp.status_code)
            raise PaymentProviderUnavailableError(
                detail=f"{self.method} returned HTTP {resp.status_code} on {method} {path}",
                context={"provider": self.method, "status_code": resp.status_code},
            )
        return resp

    def _reject(self, resp: httpx.Response, action: str) -> PaymentRejectedError:
        body = _json(resp)
        message = body.get("message") or body.get("detail") or f"HTTP {resp.status_code}"
        logger.info("%s rejected %s: HTTP %d %s", self.method, action, resp.status_code, message)
        return PaymentRejectedError(
            detail=f"{self.method} rejected {action}: {message}",
            context={"provider": self.method, "status_code": resp.status_code},
            public={"provider": self.method, "message": str(message)},
        )


def _json(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
