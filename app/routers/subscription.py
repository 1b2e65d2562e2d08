"""
Subscription Router
===================

    GET  /subscription            — current subscription
    GET  /subscription/plans      — plan catalog (public)
    GET  /subscription/analytics  — usage vs limits, days remaining, billing history
    POST /subscription/upgrade    — free plan → active; paid plan → pending_payment
    POST /subscription/cancel     — soft cancel (access until end_date)

Request bodies accept snake_case or camelCase field names.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.auth.api_key_auth import AuthenticatedUser, get_current_user
from app.services.plan_catalog import list_plans
from app.services.subscription_service import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentDetailsIn(BaseModel):
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber", max_length=32)
    email: Optional[str] = Field(default=None, max_length=255)

    model_config = {"populate_by_name": True}


class UpgradeRequest(BaseModel):
    plan: str = Field(..., description="starter | professional | enterprise")
    billing_cycle: str = Field(default="monthly", alias="billingCycle", description="monthly | annual")
    payment_method: Optional[str] = Field(
        default=None,
        alias="paymentMethod",
        description="paystack | mtn_momo | airteltigo_money (required for paid plans)",
    )
    payment_details: PaymentDetailsIn = Field(default_factory=PaymentDetailsIn, alias="paymentDetails")

    model_config = {"populate_by_name": True}


class UpgradeResponse(BaseModel):
    subscription: Dict[str, Any]
    requires_payment: bool
    authorization_url: Optional[str] = None
    transaction_id: Optional[str] = None


class PlansResponse(BaseModel):
    plans: List[Dict[str, Any]]


@router.get("", summary="Current subscription")
async def get_subscription(user: AuthenticatedUser = Depends(get_current_user)):
    return subscription_service.get_subscription(user.user_id).to_dict()


@router.get("/plans", response_model=PlansResponse, summary="Plan catalog")
async def get_plans():
    return PlansResponse(plans=[p.to_dict() for p in list_plans()])


@router.get("/analytics", summary="Subscription analytics")
async def get_analytics(user: AuthenticatedUser = Depends(get_current_user)):
    return subscription_service.get_analytics(user.user_id)


@router.post("/upgrade", response_model=UpgradeResponse, summary="Change plan")
async def upgrade(body: UpgradeRequest, user: AuthenticatedUser = Depends(get_current_user)):
    result = await subscription_service.upgrade(
        user.user_id,
        body.plan,
        billing_cycle=body.billing_cycle,
        payment_method=body.payment_method,
        payment_details=body.payment_details.model_dump(),
    )
    return UpgradeResponse(
        subscription=result.subscription,
        requires_payment=result.requires_payment,
        authorization_url=result.authorization_url,
        transaction_id=result.transaction_id,
    )


@router.post("/cancel", summary="Cancel subscription")
async def cancel(user: AuthenticatedUser = Depends(get_current_user)):
    return subscription_service.cancel(user.user_id)
