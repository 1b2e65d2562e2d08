"""
Mobile-Money Providers (MTN MoMo, AirtelTigo Money)
===================================================

Both networks authenticate with OAuth client credentials and charge through
a "request to pay" keyed by an id that ``verify`` later polls.

MTN MoMo (Collection API):
    token    → POST /collection/token/               Basic auth + Ocp-Apim-Subscription-Key
    initiate → POST /collection/v1_0/requesttopay    X-Reference-Id = new UUID, 202 Accepted
    verify   → GET  /collection/v1_0/requesttopay/{X-Reference-Id}
               SUCCESSFUL | FAILED | PENDING

AirtelTigo Money:
    token    → POST /oauth/token                     grant_type=client_credentials, Basic auth
    initiate → POST /payments/request                → {success, transactionId}
    verify   → GET  /payments/status/{transactionId} → {status}

Tokens live in a per-provider OAuthTokenCache. A 401 on an authorized call
invalidates the token and retries that call exactly once with a new one.

Callbacks are signed with HMAC-SHA256(raw body, per-provider callback
secret) in ``x-callback-signature``.
"""

from __future__ import annotations

import hashlib
import logging
from abc import abstractmethod
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

import httpx

from app.config import settings
from app.core.errors import InvalidRequestError, PaymentProviderUnavailableError, PaymentRejectedError

from .base import (
    CallbackEvent,
    MobileMoneyPaymentRequest,
    PaymentHandle,
    PaymentProvider,
    PaymentStatus,
    _json,
    generate_reference,
    hmac_hexdigest,
    normalize_status,
    signature_matches,
)
from .token_cache import OAuthTokenCache

logger = logging.getLogger(__name__)


def _format_amount(amount) -> str:
    return f"{amount:.2f}"


class MobileMoneyProvider(PaymentProvider):
    """Shared OAuth + signed-callback plumbing for mobile-money networks."""

    request_type = MobileMoneyPaymentRequest

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_secret: str,
        callback_secret: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url, client=client)
        self._api_key = api_key or ""
        self._api_secret = api_secret or ""
        self._callback_secret = callback_secret or ""
        self.tokens = OAuthTokenCache(self.method, self._fetch_token)

    @abstractmethod
    async def _fetch_token(self) -> Tuple[str, int]:
        """Request a new access token; returns (token, expires_in seconds)."""

    def _token_from(self, resp: httpx.Response):
        body = _json(resp)
        if resp.status_code >= 400 or not body.get("access_token"):
            logger.error("%s token request failed: HTTP %d", self.method, resp.status_code)
            raise PaymentProviderUnavailableError(
                detail=f"{self.method} token request failed with HTTP {resp.status_code}",
                context={"provider": self.method, "status_code": resp.status_code},
            )
        return body["access_token"], int(body.get("expires_in") or 3600)

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def _authorized_send(self, method: str, path: str, headers: Optional[dict] = None, **kwargs) -> httpx.Response:
        token = await self.tokens.get()
        resp = await self._send(method, path, headers={**self._auth_headers(token), **(headers or {})}, **kwargs)
        if resp.status_code != 401:
            return resp

        logger.info("%s returned 401 on %s %s; refreshing token", self.method, method, path)
        self.tokens.invalidate(token)
        token = await self.tokens.get()
        return await self._send(method, path, headers={**self._auth_headers(token), **(headers or {})}, **kwargs)

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self._callback_secret:
            return False
        expected = hmac_hexdigest(self._callback_secret, raw_body, hashlib.sha256)
        return signature_matches(expected, signature)


class MtnMomoProvider(MobileMoneyProvider):
    method = "mtn_momo"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        callback_secret: Optional[str] = None,
        target_environment: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            base_url or settings.mtn_base_url,
            api_key or settings.mtn_api_key,
            api_secret or settings.mtn_api_secret,
            callback_secret or settings.mtn_callback_secret,
            client=client,
        )
        self._target_environment = target_environment or settings.mtn_target_environment

    async def _fetch_token(self):
        resp = await self._send(
            "POST",
            "/collection/token/",
            auth=(self._api_key, self._api_secret),
            headers={"Ocp-Apim-Subscription-Key": self._api_key},
        )
        return self._token_from(resp)

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {
            **super()._auth_headers(token),
            "Ocp-Apim-Subscription-Key": self._api_key,
            "X-Target-Environment": self._target_environment,
        }

    async def initiate(self, request: MobileMoneyPaymentRequest) -> PaymentHandle:
        if not request.phone_number:
            raise InvalidRequestError(detail="MTN MoMo payments require a phone number")

        reference = request.reference or generate_reference()
        reference_id = str(uuid4())
        payload = {
            "amount": _format_amount(request.amount),
            "currency": request.currency,
            "externalId": reference,
            "payer": {
                "partyIdType": "MSISDN",
                "partyId": request.phone_number.lstrip("+"),
            },
            "payerMessage": request.description,
            "payeeNote": request.description,
        }
        resp = await self._authorized_send(
            "POST",
            "/collection/v1_0/requesttopay",
            headers={"X-Reference-Id": reference_id},
            json=payload,
        )
        if resp.status_code != 202:
            raise self._reject(resp, "request to pay")

        logger.info("MTN MoMo request to pay accepted: reference_id=%s reference=%s", reference_id, reference)
        return PaymentHandle(transaction_id=reference_id, reference=reference, status=PaymentStatus.PENDING)

    async def verify(self, identifier: str) -> PaymentStatus:
        resp = await self._authorized_send("GET", f"/collection/v1_0/requesttopay/{identifier}")
        if resp.status_code >= 400:
            raise self._reject(resp, "request to pay status")
        status = normalize_status(_json(resp).get("status"))
        logger.info("MTN MoMo verify: reference_id=%s status=%s", identifier, status.value)
        return status

    def parse_callback(self, payload: Dict[str, Any]) -> CallbackEvent:
        reference_id = payload.get("referenceId")
        reference = payload.get("externalId")
        if not reference_id and not reference:
            raise InvalidRequestError(detail="MTN MoMo callback missing referenceId/externalId")
        raw_status = str(payload.get("status") or "")
        payer = payload.get("payer") or {}
        party_id = payer.get("partyId")
        return CallbackEvent(
            provider=self.method,
            event_key=f"{reference_id or reference}:{raw_status.upper()}",
            event_type=f"requesttopay.{raw_status.lower() or 'unknown'}",
            status=normalize_status(raw_status),
            transaction_id=reference_id,
            reference=reference,
            phone_number=f"+{party_id}" if party_id and not str(party_id).startswith("+") else party_id,
        )


class AirtelTigoProvider(MobileMoneyProvider):
    method = "airteltigo_money"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        callback_secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            base_url or settings.airteltigo_base_url,
            api_key or settings.airteltigo_api_key,
            api_secret or settings.airteltigo_api_secret,
            callback_secret or settings.airteltigo_callback_secret,
            client=client,
        )

    async def _fetch_token(self):
        resp = await self._send(
            "POST",
            "/oauth/token",
            auth=(self._api_key, self._api_secret),
            data={"grant_type": "client_credentials"},
        )
        return self._token_from(resp)

    async def initiate(self, request: MobileMoneyPaymentRequest) -> PaymentHandle:
        if not request.phone_number:
            raise InvalidRequestError(detail="AirtelTigo Money payments require a phone number")

        reference = request.reference or generate_reference()
        payload = {
            "amount": _format_amount(request.amount),
            "currency": request.currency,
            "reference": reference,
            "phoneNumber": request.phone_number,
            "description": request.description,
        }
        resp = await self._authorized_send("POST", "/payments/request", json=payload)
        body = _json(resp)
        if resp.status_code >= 400 or not body.get("success"):
            raise self._reject(resp, "payment request")
        transaction_id = body.get("transactionId")
        if not transaction_id:
            raise PaymentRejectedError(
                detail="AirtelTigo payment response missing transactionId",
                context={"provider": self.method},
            )

        logger.info("AirtelTigo payment requested: transaction_id=%s reference=%s", transaction_id, reference)
        return PaymentHandle(transaction_id=str(transaction_id), reference=reference, status=PaymentStatus.PENDING)

    async def verify(self, identifier: str) -> PaymentStatus:
        resp = await self._authorized_send("GET", f"/payments/status/{identifier}")
        if resp.status_code >= 400:
            raise self._reject(resp, "payment status")
        status = normalize_status(_json(resp).get("status"))
        logger.info("AirtelTigo verify: transaction_id=%s status=%s", identifier, status.value)
        return status

    def parse_callback(self, payload: Dict[str, Any]) -> CallbackEvent:
        transaction_id = payload.get("transactionId")
        reference = payload.get("reference")
        if not transaction_id and not reference:
            raise InvalidRequestError(detail="AirtelTigo callback missing transactionId/reference")
        raw_status = str(payload.get("status") or "")
        return CallbackEvent(
            provider=self.method,
            event_key=f"{transaction_id or reference}:{raw_status.lower()}",
            event_type=f"payment.{raw_status.lower() or 'unknown'}",
            status=normalize_status(raw_status),
            transaction_id=str(transaction_id) if transaction_id else None,
            reference=reference,
            phone_number=payload.get("phoneNumber"),
        )
