"""OpenAI-compatible provider.

Works with any gateway implementing the OpenAI models and chat
completions API (OpenRouter-style aggregators, Ollama, vLLM, LM Studio).
Conditional import — fails with clear message if openai SDK not installed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from . import LLMResponse, Usage

log = logging.getLogger(__name__)

try:
    import openai
except ImportError:
    openai = None  # type: ignore[assignment]


class OpenAICompatProvider:
    def __init__(
        self,
        api_key: str,
        base_url: str = "",
        max_tokens: int = 1000,
        timeout: float = 60.0,
    ):
        if openai is None:
            raise RuntimeError(
                "OpenAI-compatible provider requires: pip install openai"
            )
        kwargs: dict = {
            "api_key": api_key or "not-needed",
            "timeout": httpx.Timeout(timeout, connect=10.0),
            # Retries happen at the user level (send again), not here
            "max_retries": 0,
        }
        if base_url:
            kwargs["base_url"] = base_url
        self.client = openai.OpenAI(**kwargs)
        self.max_tokens = max_tokens

    async def list_models(self) -> list[str]:
        """GET /models — ids in backend order."""
        page = await asyncio.to_thread(self.client.models.list)
        return [m.id for m in page.data]

    async def complete(
        self, model: str, system: str, messages: list[dict], **kwargs
    ) -> LLMResponse:
        """Call chat completions with the system prompt first."""
        api_messages: list[dict[str, Any]] = []
        if system:
            api_messages.append({"role": "system", "content": system})
        api_messages.extend(
            {"role": m["role"], "content": m["content"]} for m in messages
        )

        response = await asyncio.to_thread(
            self.client.chat.completions.create,
            model=model,
            messages=api_messages,
            max_tokens=kwargs.get("max_tokens", self.max_tokens),
        )

        if not response.choices:
            raise RuntimeError("backend returned no choices")
        text = response.choices[0].message.content or ""

        u = response.usage
        usage = Usage(
            input_tokens=u.prompt_tokens if u else 0,
            output_tokens=u.completion_tokens if u else 0,
        )
        log.debug("Completion from %s: %d in / %d out tokens",
                  model, usage.input_tokens, usage.output_tokens)
        return LLMResponse(text=text, model=model, usage=usage, raw=response)
