"""
Content Provider — black-box text generation behind a narrow interface.
=======================================================================

The generation backend is external. Callers depend only on
``ContentGenerator.generate(prompt, options) -> GeneratedContent`` and must
run it inside ``entitlement_service.guard()`` so usage is recorded only
after a successful generation.

HttpContentGenerator posts ``{"prompt", "options"}`` to
KLYA_CONTENT_PROVIDER_URL and expects ``{"text": ..., "tokens"?: int}``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.errors import ContentProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedContent:
    text: str
    tokens: int = 0


class ContentGenerator(ABC):
    @abstractmethod
    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> GeneratedContent:
        """Generate text for *prompt*. Raises ContentProviderError on failure."""


class HttpContentGenerator(ContentGenerator):
    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = url or settings.content_provider_url
        self._api_key = api_key or settings.content_provider_api_key
        self._client = client or httpx.AsyncClient(timeout=settings.content_provider_timeout_seconds)

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> GeneratedContent:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            resp = await self._client.post(
                self._url,
                json={"prompt": prompt, "options": options or {}},
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning("Content provider unreachable: %s", e)
            raise ContentProviderError(detail=f"Content provider unreachable: {e}") from e

        if resp.status_code != 200:
            raise ContentProviderError(
                detail=f"Content provider returned HTTP {resp.status_code}",
                context={"status_code": resp.status_code},
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ContentProviderError(detail="Content provider returned invalid JSON") from e

        text = data.get("text") if isinstance(data, dict) else None
        if not text:
            raise ContentProviderError(detail="Content provider returned no text")
        tokens = int(data.get("tokens") or len(text.split()))
        return GeneratedContent(text=text, tokens=tokens)

    async def aclose(self) -> None:
        await self._client.aclose()


_generator: Optional[ContentGenerator] = None


def get_content_generator() -> ContentGenerator:
    """FastAPI dependency returning the process-wide generator."""
    global _generator
    if _generator is None:
        _generator = HttpContentGenerator()
    return _generator


async def close_content_generator() -> None:
    global _generator
    if isinstance(_generator, HttpContentGenerator):
        await _generator.aclose()
    _generator = None
