"""
Plan Catalog — Static Subscription Plans
========================================

PURPOSE:
    Read-only table of plan id → price, limits and feature flags.
    1. **get_plan()** — Lookup by id; raises InvalidPlanError for unknown ids.
    2. **list_plans()** — All plans in display order (cheapest first).
    3. **price_for_cycle()** — Price for a billing cycle (annual = 10× monthly).
    4. **interval_for_cycle()** — Length of one billing interval.

SNAPSHOT RULE:
    Subscriptions store a deep copy of ``limits`` and ``features`` at the
    moment a plan is (re)assigned. Editing this table never changes an
    existing subscriber's quota; only the next upgrade picks it up.

LIMITS:
    -1 means unlimited. storage_gb is informational (not metered per request).
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List

from app.core.errors import InvalidPlanError, InvalidRequestError

__all__ = [
    "BillingCycle",
    "Plan",
    "PlanId",
    "UNLIMITED",
    "get_plan",
    "list_plans",
    "price_for_cycle",
    "interval_for_cycle",
]

UNLIMITED = -1


class PlanId(str, Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


_CYCLE_INTERVALS = {
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.ANNUAL: timedelta(days=365),
}

_CYCLE_PRICE_MULTIPLIER = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.ANNUAL: 10,
}


@dataclass(frozen=True)
class Plan:
    """A subscription plan. Prices are monthly, in ``currency``."""

    id: str
    name: str
    price: Decimal
    currency: str
    billing_interval: str
    limits: Dict[str, int] = field(default_factory=dict)
    features: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_free(self) -> bool:
        return self.price == 0

    def limits_snapshot(self) -> Dict[str, int]:
        return copy.deepcopy(self.limits)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "annual_price": str(price_for_cycle(self, BillingCycle.ANNUAL)),
            "currency": self.currency,
            "billing_interval": self.billing_interval,
            "limits": self.limits_snapshot(),
            "features": sorted(self.features),
        }


_PLANS: Dict[str, Plan] = {
    PlanId.STARTER.value: Plan(
        id=PlanId.STARTER.value,
        name="Starter",
        price=Decimal("0"),
        currency="GHS",
        billing_interval=BillingCycle.MONTHLY.value,
        limits={
            "content_generations": 5,
            "audio_transcriptions": 60,
            "image_generations": 3,
            "api_calls": 100,
            "storage_gb": 1,
        },
        features=frozenset({"content_generation", "basic_analytics", "email_support"}),
    ),
    PlanId.PROFESSIONAL.value: Plan(
        id=PlanId.PROFESSIONAL.value,
        name="Professional",
        price=Decimal("99"),
        currency="GHS",
        billing_interval=BillingCycle.MONTHLY.value,
        limits={
            "content_generations": UNLIMITED,
            "audio_transcriptions": 600,
            "image_generations": 20,
            "api_calls": 1000,
            "storage_gb": 10,
        },
        features=frozenset({
            "content_generation",
            "audio_transcription",
            "advanced_analytics",
            "priority_support",
            "api_access",
        }),
    ),
    PlanId.ENTERPRISE.value: Plan(
        id=PlanId.ENTERPRISE.value,
        name="Enterprise",
        price=Decimal("299"),
        currency="GHS",
        billing_interval=BillingCycle.MONTHLY.value,
        limits={
            "content_generations": UNLIMITED,
            "audio_transcriptions": UNLIMITED,
            "image_generations": UNLIMITED,
            "api_calls": UNLIMITED,
            "storage_gb": 100,
        },
        features=frozenset({
            "content_generation",
            "audio_transcription",
            "image_generation",
            "advanced_analytics",
            "priority_support",
            "api_access",
            "custom_integrations",
            "dedicated_support",
        }),
    ),
}


def get_plan(plan_id: str) -> Plan:
    plan = _PLANS.get(plan_id)
    if plan is None:
        raise InvalidPlanError(
            detail=f"Unknown plan {plan_id!r}",
            public={"plan": plan_id, "available": list(_PLANS)},
        )
    return plan


def list_plans() -> List[Plan]:
    return sorted(_PLANS.values(), key=lambda p: p.price)


def _cycle(billing_cycle: str) -> BillingCycle:
    try:
        return BillingCycle(billing_cycle)
    except ValueError:
        raise InvalidRequestError(
            detail=f"Unknown billing cycle {billing_cycle!r}",
            public={"billing_cycle": billing_cycle},
        ) from None


def price_for_cycle(plan: Plan, billing_cycle: str) -> Decimal:
    return plan.price * _CYCLE_PRICE_MULTIPLIER[_cycle(billing_cycle)]


def interval_for_cycle(billing_cycle: str) -> timedelta:
    return _CYCLE_INTERVALS[_cycle(billing_cycle)]
