"""
Payments Router
===============

    POST /payments/webhook           — Paystack push (x-paystack-signature)
    POST /payments/webhook/{method}  — mobile-money callbacks (x-callback-signature)
    GET  /payments/verify/{txn_id}   — client poll, rate limited per user

Webhooks are public. The signature is checked against the raw body before
anything is parsed; a bad signature is 401 and nothing is stored. Once the
event is in the inbox the response is 200 and processing continues in a
background task, so provider retries never pile up behind our own work.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from app.auth.api_key_auth import AuthenticatedUser, get_current_user
from app.config import settings
from app.core.errors import UnsupportedPaymentMethodError
from app.services.attempt_limiter import attempt_limiter
from app.services.subscription_service import subscription_service
from app.services.webhook_handler import webhook_handler

logger = logging.getLogger(__name__)

router = APIRouter()

MOBILE_MONEY_METHODS = ("mtn_momo", "airteltigo_money")


async def _accept(method: str, request: Request, signature_header: str, background_tasks: BackgroundTasks) -> dict:
    raw_body = await request.body()
    received = webhook_handler.receive(method, raw_body, request.headers.get(signature_header))
    if received.duplicate:
        return {"status": "duplicate", "event_id": received.event_id}
    background_tasks.add_task(webhook_handler.process, received.event_id)
    return {"status": "received", "event_id": received.event_id}


@router.post("/webhook", summary="Paystack webhook")
async def paystack_webhook(request: Request, background_tasks: BackgroundTasks):
    return await _accept("paystack", request, "x-paystack-signature", background_tasks)


@router.post("/webhook/{method}", summary="Mobile-money callback")
async def mobile_money_webhook(method: str, request: Request, background_tasks: BackgroundTasks):
    if method not in MOBILE_MONEY_METHODS:
        raise UnsupportedPaymentMethodError(
            detail=f"No callback endpoint for {method!r}",
            public={"payment_method": method},
        )
    return await _accept(method, request, "x-callback-signature", background_tasks)


@router.get("/verify/{transaction_id}", summary="Verify a payment")
async def verify_payment(transaction_id: str, user: AuthenticatedUser = Depends(get_current_user)):
    attempt_limiter.check(
        f"verify:{user.user_id}",
        settings.verify_poll_limit,
        settings.verify_poll_window_seconds,
    )
    result = await subscription_service.confirm_payment(user.user_id, transaction_id)
    return {
        "status": result.status.value,
        "applied": result.applied,
        "duplicate": result.duplicate,
        "subscription": result.subscription,
    }
