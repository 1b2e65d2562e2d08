"""
Paystack (card / bank / mobile_money checkout)
==============================================

    initiate → POST /transaction/initialize   (amount in pesewas)
    verify   → GET  /transaction/verify/{reference}

The reference doubles as the transaction id: Paystack verifies by
reference, so PaymentHandle.transaction_id == PaymentHandle.reference.

Webhooks carry ``x-paystack-signature`` = HMAC-SHA512(raw body, secret key).
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.errors import InvalidRequestError, PaymentRejectedError

from .base import (
    CallbackEvent,
    CardPaymentRequest,
    PaymentHandle,
    PaymentProvider,
    PaymentStatus,
    _json,
    generate_reference,
    hmac_hexdigest,
    signature_matches,
    to_minor_units,
)

logger = logging.getLogger(__name__)

CHANNELS = ["card", "bank", "mobile_money"]

_STATUS_MAP = {
    "success": PaymentStatus.SUCCESS,
    "failed": PaymentStatus.FAILED,
    "abandoned": PaymentStatus.FAILED,
    "reversed": PaymentStatus.FAILED,
}


def normalize_paystack_status(raw: Optional[str]) -> PaymentStatus:
    return _STATUS_MAP.get((raw or "").lower(), PaymentStatus.PENDING)


class PaystackProvider(PaymentProvider):
    method = "paystack"
    request_type = CardPaymentRequest
    signature_header = "x-paystack-signature"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url or settings.paystack_base_url, client=client)
        self._secret_key = secret_key or settings.paystack_secret_key or ""

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    async def initiate(self, request: CardPaymentRequest) -> PaymentHandle:
        if not request.email:
            raise InvalidRequestError(detail="Paystack payments require an email")

        reference = request.reference or generate_reference()
        payload = {
            "email": request.email,
            "amount": to_minor_units(request.amount),
            "currency": request.currency,
            "reference": reference,
            "callback_url": request.callback_url or settings.payment_callback_url,
            "channels": CHANNELS,
        }
        resp = await self._send("POST", "/transaction/initialize", json=payload, headers=self._headers())
        body = _json(resp)
        if resp.status_code >= 400 or not body.get("status"):
            raise self._reject(resp, "transaction initialize")

        data = body.get("data") or {}
        if not data.get("authorization_url"):
            raise PaymentRejectedError(
                detail="Paystack initialize response missing authorization_url",
                context={"provider": self.method},
            )
        reference = data.get("reference") or reference
        logger.info("Paystack transaction initialized: reference=%s", reference)
        return PaymentHandle(
            transaction_id=reference,
            reference=reference,
            authorization_url=data["authorization_url"],
            status=PaymentStatus.PENDING,
        )

    async def verify(self, identifier: str) -> PaymentStatus:
        resp = await self._send("GET", f"/transaction/verify/{identifier}", headers=self._headers())
        body = _json(resp)
        if resp.status_code >= 400 or not body.get("status"):
            raise self._reject(resp, "transaction verify")
        status = normalize_paystack_status((body.get("data") or {}).get("status"))
        logger.info("Paystack verify: reference=%s status=%s", identifier, status.value)
        return status

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self._secret_key:
            return False
        expected = hmac_hexdigest(self._secret_key, raw_body, hashlib.sha512)
        return signature_matches(expected, signature)

    def parse_callback(self, payload: Dict[str, Any]) -> CallbackEvent:
        event = str(payload.get("event") or "")
        data = payload.get("data") or {}
        reference = data.get("reference")
        if not event or not reference:
            raise InvalidRequestError(detail="Paystack webhook missing event or data.reference")
        customer = data.get("customer") or {}
        return CallbackEvent(
            provider=self.method,
            event_key=f"{event}:{data.get('id') or reference}",
            event_type=event,
            status=normalize_paystack_status(data.get("status")),
            transaction_id=reference,
            reference=reference,
            email=customer.get("email"),
        )
