"""Client for web-search-enabled research through the OpenAI Responses API."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from openai import APIError as OpenAIAPIError
from openai import APITimeoutError, AsyncOpenAI
from openai import OpenAIError as OpenAIBaseError

from app.config import settings

logger = logging.getLogger(__name__)


class ResearchServiceError(RuntimeError):
    """Base error for research provider failures."""

    def __init__(self, message: str, code: str = "RESEARCH_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ResearchTimeoutError(ResearchServiceError):
    """Raised when the research request exceeds its timeout."""

    def __init__(self, message: str = "Research request timed out") -> None:
        super().__init__(message, code="504_RESEARCH_TIMEOUT")


class ResearchService(Protocol):
    """LLM completion capability with a web-search tool."""

    async def research(self, *, system_prompt: str, user_prompt: str) -> Sequence[Mapping[str, Any]]:
        """Return the raw content blocks produced by the model."""
        ...


class OpenAIResearchClient(ResearchService):
    """Thin wrapper around AsyncOpenAI with the hosted web-search tool enabled."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str | None = None,
        search_tool: str | None = None,
        max_output_tokens: int | None = None,
        timeout_seconds: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("OPENAI_API_KEY is required to cross-reference grants.")
        self._model = model or settings.research_model
        self._search_tool = search_tool or settings.research_search_tool
        self._max_output_tokens = max_output_tokens or settings.research_max_output_tokens
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            timeout=timeout_seconds or settings.research_timeout_seconds,
            max_retries=0,
        )

    @classmethod
    def from_settings(cls) -> OpenAIResearchClient:
        """Instantiate the client using OPENAI_API_KEY."""
        return cls(api_key=settings.openai_api_key or "")

    async def research(self, *, system_prompt: str, user_prompt: str) -> list[dict[str, Any]]:
        try:
            response = await self._client.responses.create(
                model=self._model,
                max_output_tokens=self._max_output_tokens,
                tools=[{"type": self._search_tool}],
                instructions=system_prompt,
                input=[{"role": "user", "content": user_prompt}],
            )
        except APITimeoutError as exc:
            raise ResearchTimeoutError() from exc
        except OpenAIAPIError as exc:
            code = "429_RATE_LIMIT" if getattr(exc, "status_code", 500) == 429 else "502_OPENAI_UPSTREAM"
            message = getattr(exc, "message", str(exc))
            raise ResearchServiceError(f"OpenAI request failed: {message}", code=code) from exc
        except OpenAIBaseError as exc:
            raise ResearchServiceError(f"OpenAI request failed: {exc}", code="502_OPENAI_UPSTREAM") from exc

        blocks = _dump_output_items(response)
        logger.info(
            "verification.research.response",
            extra={"model": self._model, "blocks": len(blocks)},
        )
        return blocks


def _dump_output_items(response: Any) -> list[dict[str, Any]]:
    """Normalize SDK output items into plain dictionaries."""
    items = getattr(response, "output", None) or []
    blocks: list[dict[str, Any]] = []
    for item in items:
        if isinstance(item, Mapping):
            blocks.append(dict(item))
        elif hasattr(item, "model_dump"):
            blocks.append(item.model_dump())
    if not blocks:
        text = getattr(response, "output_text", None)
        if isinstance(text, str) and text:
            blocks.append({"type": "output_text", "text": text})
    return blocks
