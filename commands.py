"""Command processor — slash commands and LLM queries.

One process-wide CommandState shared by every chat and transport: a
/sleep or model switch in one chat applies everywhere. The router calls
process() serially, so the state needs no locking.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from memory import ConversationMemory
from providers import LLMProvider, describe_error, filter_free_models

log = logging.getLogger(__name__)


class RestartAction:
    """Result token: the router replies, then restarts the process."""

    def __repr__(self) -> str:
        return "RESTART"


RESTART = RestartAction()

DEFAULT_FALLBACK_MODELS = ("kilo/auto", "minimax/minimax-m2.5:free", "z-ai/glm-5:free")

_MODEL_PREFIX = "/model/"
_PROMPT_COMMAND = "/systemprompt"
_PROMPT_PREFIX = "/systemprompt/"


@dataclass
class CommandState:
    active_model: str
    system_prompt: str
    sleeping: bool = False
    model_cache: list[str] = field(default_factory=list)


def short_model_name(model: str) -> str:
    return model.rsplit("/", 1)[-1]


def footer(model: str, seconds: int) -> str:
    return f"\n\n{short_model_name(model)} | {seconds}s | {time.strftime('%H:%M')}"


class CommandProcessor:
    def __init__(
        self,
        provider: LLMProvider,
        memory: ConversationMemory,
        *,
        default_model: str,
        system_prompt: str,
        admin: str = "",
        bot_name: str = "relayd",
        admin_name: str = "the admin",
        query_timeout: float = 35.0,
        free_marker: str = ":free",
        always_models: Sequence[str] = ("kilo/auto",),
        max_models: int = 10,
        fallback_models: Sequence[str] = DEFAULT_FALLBACK_MODELS,
    ):
        self.provider = provider
        self.memory = memory
        self.admin = admin
        self.bot_name = bot_name
        self.admin_name = admin_name
        self.query_timeout = query_timeout
        self.free_marker = free_marker
        self.always_models = tuple(always_models)
        self.max_models = max_models
        self.fallback_models = list(fallback_models)
        self.state = CommandState(active_model=default_model, system_prompt=system_prompt)

    def is_admin(self, sender_id: str) -> bool:
        # Same number appears as "31...@s.whatsapp.net" and "+31..."
        return bool(self.admin and sender_id and self.admin in sender_id)

    def help_text(self) -> str:
        return (
            f"🛠️ *{self.bot_name} Commands:*\n"
            "/models - List available free LLMs\n"
            "/model/[number] - Switch LLM by number from list\n"
            "/systemprompt - Show the current system prompt\n"
            "/systemprompt/[prompt] - Change the AI's behavior\n"
            "/sleep - Put the AI into sleep mode (ignores messages)\n"
            "/wakeup - Wake up the AI from sleep mode\n"
            "/restart - Restart the AI services\n"
            "/help - Show this help message"
        )

    async def process(
        self, chat_id: str, sender_id: str, text: str | None, platform: str = "",
    ) -> str | RestartAction | None:
        """Turn one inbound text into a reply, RESTART, or None (no reply)."""
        raw = (text or "").strip()
        if not raw:
            log.error("Received empty text from %s:%s", platform, sender_id)
            return None

        cmd = raw.lower()
        log.info("Processing %s message from %s: %r", platform or "?", sender_id, raw[:200])

        if self.state.sleeping:
            if cmd == "/wakeup":
                self.state.sleeping = False
                log.info("Woken up by %s", sender_id)
                return f"{self.bot_name} is now awake and ready to assist."
            if cmd == "/restart":
                return self._restart(sender_id)
            if cmd != "/help":
                return None

        if cmd == "/sleep":
            self.state.sleeping = True
            log.info("Sleep mode enabled by %s", sender_id)
            return f"{self.bot_name} is going to sleep. Send /wakeup to resume."

        if cmd == "/restart":
            return self._restart(sender_id)

        if cmd == "/help":
            return self.help_text()

        if cmd == "/models":
            return await self._list_models()

        if cmd.startswith(_MODEL_PREFIX):
            return await self._select_model(raw[len(_MODEL_PREFIX):].strip())

        if cmd == _PROMPT_COMMAND:
            return f"Current system prompt:\n{self.state.system_prompt}"

        if cmd.startswith(_PROMPT_PREFIX):
            new_prompt = raw[len(_PROMPT_PREFIX):].strip()
            if new_prompt:
                self.state.system_prompt = new_prompt
                log.info("System prompt changed by %s", sender_id)
                return "System prompt updated successfully."
            return "Please provide a valid system prompt. Example: /systemprompt/[You are a pirate]"

        return await self._query(chat_id, raw)

    def _restart(self, sender_id: str) -> str | RestartAction:
        if not self.is_admin(sender_id):
            log.warning("Restart denied for %s", sender_id)
            return f"Sorry, only {self.admin_name} is allowed to restart me! 🔒"
        log.warning("Restart requested by %s", sender_id)
        return RESTART

    # ─── Models ──────────────────────────────────────────────────

    async def _fetch_models(self) -> list[str]:
        try:
            ids = await self.provider.list_models()
        except Exception as e:
            log.error("Error fetching models: %s", describe_error(e))
            return list(self.fallback_models)
        models = filter_free_models(
            ids, marker=self.free_marker, always=self.always_models, limit=self.max_models,
        )
        if not models:
            log.warning("Backend listed no free models, using fallback list")
            return list(self.fallback_models)
        return models

    async def _list_models(self) -> str:
        models = await self._fetch_models()
        self.state.model_cache = models
        numbered = "\n".join(f"{i}. {m}" for i, m in enumerate(models, 1))
        return (
            f"*Available Free LLMs:*\n{numbered}\n\n"
            "Use /model/[number] to switch\n"
            f"Current: {self.state.active_model}"
        )

    async def _select_model(self, requested: str) -> str:
        if not self.state.model_cache:
            self.state.model_cache = await self._fetch_models()
        cache = self.state.model_cache

        if not requested:
            return "❌ Please name a model. Use /models to see the numbered list."

        if requested.isdecimal():
            num = int(requested)
            if 1 <= num <= len(cache):
                self.state.active_model = cache[num - 1]
                log.info("Active model: %s", self.state.active_model)
                return f"✅ Switched to model: {self.state.active_model}"

        needle = requested.lower()
        match = next((m for m in cache if needle in m.lower()), None)
        if match is None:
            return f'❌ No model matching "{requested}". Use /models to see the numbered list.'
        self.state.active_model = match
        log.info("Active model: %s", match)
        return f"✅ Switched to model: {match}"

    # ─── LLM Query ───────────────────────────────────────────────

    async def _query(self, chat_id: str, text: str) -> str:
        model = self.state.active_model
        history = self.memory.get_history(chat_id)
        messages = history + [{"role": "user", "content": text}]

        started = time.monotonic()
        task = asyncio.ensure_future(
            self.provider.complete(model, self.state.system_prompt, messages),
        )
        done, _ = await asyncio.wait({task}, timeout=self.query_timeout)
        if not done:
            # Abandoned, not cancelled: the backend call may still finish
            task.add_done_callback(_discard_late_result)
            log.warning("LLM query to %s timed out after %gs", model, self.query_timeout)
            return "⏳ The AI took too long to respond. Please try again."

        try:
            response = task.result()
        except Exception as e:
            reason = describe_error(e)
            log.error("LLM query to %s failed: %s", model, reason)
            return f"⚠️ Error: Could not reach AI backend. ({reason})"

        duration = round(time.monotonic() - started)
        self.memory.add_message(chat_id, "user", text)
        self.memory.add_message(chat_id, "assistant", response.text)
        return response.text + footer(model, duration)


def _discard_late_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.debug("Late LLM result discarded (failed: %s)", exc)
    else:
        log.debug("Late LLM result discarded")
