"""
Webhook Handler — authenticated provider pushes → confirm_payment()
===================================================================

PURPOSE:
    1. **receive()** — Authenticate the raw body with the provider's
       signature scheme, parse it, and store it in the webhook_events inbox.
       A (provider, event_key) pair already in the inbox is a duplicate
       delivery: acknowledged, never reprocessed.
    2. **process()** — Resolve the customer (email → phone number → stored
       payment reference/transaction id) to a local subscription and call
       subscription_service.confirm_payment(). The pushed status is only a
       trigger; confirm_payment() re-verifies with the provider.
    3. **retry_pending()** — Called by the sweeper for inbox rows that were
       never processed or failed transiently (bounded by
       KLYA_WEBHOOK_MAX_ATTEMPTS).

An unauthenticated push never reaches the inbox and never changes state.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.config import settings
from app.core.errors import (
    InvalidRequestError,
    InvalidWebhookSignatureError,
    KlyaError,
    NotFoundError,
    PaymentProviderUnavailableError,
)
from app.core.timeutils import utcnow
from app.models.webhook import WebhookEvent, WebhookStatus
from app.services.payments import CallbackEvent, PaymentStatus

logger = logging.getLogger(__name__)

__all__ = ["ReceivedWebhook", "WebhookHandler", "webhook_handler"]

# Rows younger than this are assumed to still be in their background task.
RETRY_GRACE = timedelta(minutes=1)


@dataclass(frozen=True)
class ReceivedWebhook:
    event_id: int
    duplicate: bool
    event_type: str


def _get_db_session():
    from app.core.database import get_session_context
    return get_session_context()


class WebhookHandler:
    def __init__(self, gateway=None, subscriptions=None) -> None:
        self._gateway = gateway
        self._subscriptions = subscriptions

    @property
    def gateway(self):
        if self._gateway is None:
            from app.services.payments import payment_gateway
            self._gateway = payment_gateway
        return self._gateway

    @property
    def subscriptions(self):
        if self._subscriptions is None:
            from app.services.subscription_service import subscription_service
            self._subscriptions = subscription_service
        return self._subscriptions

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    def receive(self, method: str, raw_body: bytes, signature: Optional[str]) -> ReceivedWebhook:
        provider = self.gateway.provider(method)
        if not provider.verify_signature(raw_body, signature):
            logger.warning(
                "webhook_signature_invalid",
                extra={"provider": method, "has_signature": bool(signature)},
            )
            raise InvalidWebhookSignatureError(
                detail=f"Invalid {method} webhook signature",
                context={"provider": method},
            )

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise InvalidRequestError(detail=f"{method} webhook body is not JSON") from e
        if not isinstance(payload, dict):
            raise InvalidRequestError(detail=f"{method} webhook body is not a JSON object")

        event = provider.parse_callback(payload)
        row = WebhookEvent(
            provider=method,
            event_key=event.event_key,
            event_type=event.event_type,
            payload=raw_body.decode("utf-8", errors="replace"),
        )

        with _get_db_session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.exec(
                    select(WebhookEvent).where(
                        WebhookEvent.provider == method,
                        WebhookEvent.event_key == event.event_key,
                    )
                ).one()
                logger.info("Duplicate %s webhook acknowledged: %s", method, event.event_key)
                return ReceivedWebhook(event_id=existing.id, duplicate=True, event_type=existing.event_type)
            session.refresh(row)

        logger.info(
            "webhook_received",
            extra={"provider": method, "event_key": event.event_key, "event_type": event.event_type},
        )
        return ReceivedWebhook(event_id=row.id, duplicate=False, event_type=event.event_type)

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------

    def _resolve(self, event: CallbackEvent) -> Optional[Tuple[str, str]]:
        """Map a callback onto (user_id, transaction_id), or None if unknown."""
        from app.models.subscription import Subscription
        from app.models.user import User

        def _matches(sub) -> bool:
            if event.transaction_id and sub.payment_transaction_id == event.transaction_id:
                return True
            return bool(event.reference) and sub.payment_reference == event.reference

        with _get_db_session() as session:
            user = None
            if event.email:
                user = session.exec(select(User).where(User.email == event.email)).first()
            if user is None and event.phone_number:
                user = session.exec(select(User).where(User.phone_number == event.phone_number)).first()

            sub = None
            if user is not None:
                sub = session.exec(select(Subscription).where(Subscription.user_id == user.id)).first()
            if sub is None or not _matches(sub):
                if event.transaction_id:
                    stmt = select(Subscription).where(Subscription.payment_transaction_id == event.transaction_id)
                else:
                    stmt = select(Subscription).where(Subscription.payment_reference == event.reference)
                sub = session.exec(stmt).first()

        if sub is None or not _matches(sub):
            return None
        return sub.user_id, event.transaction_id or sub.payment_transaction_id

    def _finish(self, event_id: int, status: str, error: Optional[str] = None) -> None:
        with _get_db_session() as session:
            row = session.get(WebhookEvent, event_id)
            row.status = status
            row.last_error = error
            if status in (WebhookStatus.PROCESSED.value, WebhookStatus.IGNORED.value):
                row.processed_at = utcnow()
            session.add(row)
            session.commit()

    async def process(self, event_id: int) -> str:
        """Process one inbox row. Returns its resulting status."""
        with _get_db_session() as session:
            row = session.get(WebhookEvent, event_id)
            if row is None:
                raise NotFoundError(detail=f"Webhook event {event_id} not found")
            if row.status in (WebhookStatus.PROCESSED.value, WebhookStatus.IGNORED.value):
                return row.status
            row.attempts += 1
            session.add(row)
            session.commit()
            method = row.provider
            payload = json.loads(row.payload)

        event = self.gateway.provider(method).parse_callback(payload)

        if method == "paystack" and event.event_type != "charge.success":
            self._finish(event_id, WebhookStatus.IGNORED.value, f"unhandled event {event.event_type}")
            return WebhookStatus.IGNORED.value
        if event.status == PaymentStatus.PENDING:
            self._finish(event_id, WebhookStatus.IGNORED.value, "pending status push")
            return WebhookStatus.IGNORED.value

        target = self._resolve(event)
        if target is None:
            logger.warning("Webhook %s for unknown customer/transaction: %s", event_id, event.event_key)
            self._finish(event_id, WebhookStatus.IGNORED.value, "no matching subscription")
            return WebhookStatus.IGNORED.value

        user_id, transaction_id = target
        try:
            result = await self.subscriptions.confirm_payment(user_id, transaction_id, method)
        except NotFoundError as e:
            self._finish(event_id, WebhookStatus.IGNORED.value, str(e))
            return WebhookStatus.IGNORED.value
        except PaymentProviderUnavailableError as e:
            logger.warning("Webhook %s deferred, provider unavailable: %s", event_id, e)
            self._finish(event_id, WebhookStatus.FAILED.value, str(e))
            return WebhookStatus.FAILED.value
        except KlyaError as e:
            logger.error("Webhook %s processing failed: %s", event_id, e)
            self._finish(event_id, WebhookStatus.FAILED.value, str(e))
            return WebhookStatus.FAILED.value

        logger.info(
            "webhook_processed",
            extra={
                "event_id": event_id,
                "user_id": user_id,
                "transaction_id": transaction_id,
                "applied": result.applied,
                "duplicate": result.duplicate,
                "payment_status": result.status.value,
            },
        )
        self._finish(event_id, WebhookStatus.PROCESSED.value)
        return WebhookStatus.PROCESSED.value

    async def retry_pending(self, now: Optional[datetime] = None) -> int:
        """Re-process stale received/failed inbox rows. Returns rows attempted."""
        now = now or utcnow()
        with _get_db_session() as session:
            rows = session.exec(
                select(WebhookEvent.id).where(
                    WebhookEvent.status.in_([WebhookStatus.RECEIVED.value, WebhookStatus.FAILED.value]),
                    WebhookEvent.attempts < settings.webhook_max_attempts,
                    WebhookEvent.received_at < now - RETRY_GRACE,
                )
            ).all()

        for event_id in rows:
            try:
                await self.process(event_id)
            except KlyaError as e:
                # Unparseable stored payloads stay failed until attempts run out.
                logger.error("Webhook %s retry failed: %s", event_id, e)
                self._finish(event_id, WebhookStatus.FAILED.value, str(e))
        return len(rows)


# Module-level singleton
webhook_handler = WebhookHandler()
