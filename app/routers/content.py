"""
Content Router — entitlement-gated generation.

    POST /content/generate

Order: feature check → quota check (guard) → provider call → usage recorded.
A denied request never reaches the provider; a failed provider call
records nothing.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.auth.api_key_auth import AuthenticatedUser, get_current_user
from app.services.content_provider import ContentGenerator, get_content_generator
from app.services.entitlements import entitlement_service

logger = logging.getLogger(__name__)

router = APIRouter()

METRIC = "content_generations"
FEATURE = "content_generation"


class GenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=8000)
    type: str = Field(default="text", max_length=64)
    language: str = Field(default="en", max_length=16)
    options: Dict[str, Any] = Field(default_factory=dict)


class GenerateResponse(BaseModel):
    text: str
    tokens: int
    remaining: Optional[int] = None
    limit: int


@router.post("/generate", response_model=GenerateResponse)
async def generate_content(
    body: GenerateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    generator: ContentGenerator = Depends(get_content_generator),
):
    entitlement_service.require_feature(user.user_id, FEATURE)

    async with entitlement_service.guard(user.user_id, METRIC) as ticket:
        content = await generator.generate(
            body.prompt,
            {**body.options, "type": body.type, "language": body.language},
        )
        ticket.metadata.update({"tokens": content.tokens, "language": body.language, "type": body.type})

    check = ticket.check
    remaining = check.remaining if check.limit == -1 else max(0, check.remaining - ticket.amount)
    return GenerateResponse(text=content.text, tokens=content.tokens, remaining=remaining, limit=check.limit)
