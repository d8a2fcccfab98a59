"""LLM backend interface and shared types.

Defines the contract between the command processor and the LLM gateway:
list the available models, run one chat completion.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

log = logging.getLogger(__name__)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    text: str
    model: str
    usage: Usage = field(default_factory=Usage)
    raw: Any = None


class LLMProvider(Protocol):
    """Protocol for LLM backend implementations."""

    async def list_models(self) -> list[str]:
        """Return every model id the backend offers, in backend order."""
        ...

    async def complete(
        self, model: str, system: str, messages: list[dict], **kwargs
    ) -> LLMResponse:
        """Send system prompt + messages to model, return normalized response."""
        ...


def filter_free_models(
    model_ids: Iterable[str],
    marker: str = ":free",
    always: Iterable[str] = ("kilo/auto",),
    limit: int = 10,
) -> list[str]:
    """Keep free-tier ids (containing marker) and always-listed ids, first `limit`."""
    always = set(always)
    free = [m for m in model_ids if marker in m or m in always]
    return free[:limit]


def describe_error(exc: BaseException) -> str:
    """Short reason for a backend failure, e.g. 'HTTP 429'."""
    status = getattr(exc, "status_code", None)
    if status:
        return f"HTTP {status}"
    text = str(exc)
    return text[:200] if text else type(exc).__name__


def create_provider(llm_config: dict, api_key: str = "") -> LLMProvider:
    """Factory: create provider from the [llm] config section."""
    provider_type = llm_config.get("provider", "openai-compat")

    if provider_type == "openai-compat":
        from .openai_compat import OpenAICompatProvider
        return OpenAICompatProvider(
            api_key=api_key,
            base_url=llm_config.get("base_url", ""),
            max_tokens=llm_config.get("max_tokens", 1000),
            timeout=llm_config.get("request_timeout", 60.0),
        )
    raise ValueError(f"Unknown provider type: {provider_type!r}")
