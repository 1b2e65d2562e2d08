"""
Usage Router
============

    GET /usage/limits/{metric}  — {allowed, remaining, limit} for the current period
    GET /usage/stats?days=30    — daily breakdown + totals
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.auth.api_key_auth import AuthenticatedUser, get_current_user
from app.services.entitlements import entitlement_service
from app.services.usage_ledger import usage_ledger

router = APIRouter()

# camelCase names used by older clients
METRIC_ALIASES = {
    "contentGenerations": "content_generations",
    "audioTranscriptions": "audio_transcriptions",
    "imageGenerations": "image_generations",
    "apiCalls": "api_calls",
}


class UsageLimitResponse(BaseModel):
    allowed: bool
    remaining: int
    limit: int


@router.get("/limits/{metric}", response_model=UsageLimitResponse)
async def check_usage_limit(metric: str, user: AuthenticatedUser = Depends(get_current_user)):
    result = entitlement_service.check_usage_limit(user.user_id, METRIC_ALIASES.get(metric, metric))
    return UsageLimitResponse(**result.to_dict())


@router.get("/stats")
async def usage_stats(
    days: int = Query(default=30, ge=1, le=366),
    user: AuthenticatedUser = Depends(get_current_user),
):
    return usage_ledger.get_user_stats(user.user_id, days=days)
