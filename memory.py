"""Conversation memory — bounded, time-boxed per-chat history.

One JSON document on disk: {chat_id: [{role, content, timestamp}, ...]}.
Held in memory, flushed whole-file on an interval. Persistence is
best-effort: read/write failures are logged and the store keeps running.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

log = logging.getLogger(__name__)

MAX_MESSAGES = 50
MAX_AGE_SECONDS = 48 * 3600

_ROLES = frozenset({"user", "assistant"})


def _atomic_write(path: Path, data: str) -> None:
    """Write to temp file then rename — atomic on POSIX."""
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    tmp.rename(path)


class ConversationMemory:
    def __init__(
        self,
        path: str | Path,
        max_messages: int = MAX_MESSAGES,
        max_age: float = MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.max_messages = max_messages
        self.max_age = max_age
        self.clock = clock
        self._chats: dict[str, list[dict]] = {}

    @property
    def chat_count(self) -> int:
        return len(self._chats)

    def add_message(self, chat_id: str, role: str, content: str) -> None:
        if role not in _ROLES:
            raise ValueError(f"Invalid role: {role!r}")
        entries = self._chats.setdefault(chat_id, [])
        entries.append({"role": role, "content": content, "timestamp": self.clock()})
        if len(entries) > self.max_messages:
            del entries[:-self.max_messages]

    def get_history(self, chat_id: str) -> list[dict]:
        """Live entries for chat_id as {role, content}, oldest first."""
        cutoff = self.clock() - self.max_age
        return [
            {"role": e["role"], "content": e["content"]}
            for e in self._chats.get(chat_id, [])
            if e["timestamp"] > cutoff
        ]

    def prune(self) -> int:
        """Drop expired entries and empty chats. Returns entries removed."""
        cutoff = self.clock() - self.max_age
        removed = 0
        for chat_id in list(self._chats):
            entries = self._chats[chat_id]
            kept = [e for e in entries if e["timestamp"] > cutoff]
            removed += len(entries) - len(kept)
            if kept:
                self._chats[chat_id] = kept
            else:
                del self._chats[chat_id]
        return removed

    # ─── Persistence ─────────────────────────────────────────────

    def load(self) -> None:
        """Load the store from disk and prune it. Missing file: create the directory."""
        if not self.path.exists():
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                log.error("Cannot create memory directory %s: %s", self.path.parent, e)
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.error("Error loading memory from %s: %s", self.path, e)
            self._chats = {}
            return
        if not isinstance(data, dict):
            log.error("Memory file %s is not a JSON object, starting empty", self.path)
            self._chats = {}
            return

        chats: dict[str, list[dict]] = {}
        for chat_id, entries in data.items():
            if not isinstance(entries, list):
                continue
            valid = [
                {"role": e["role"], "content": e["content"], "timestamp": _seconds(e["timestamp"])}
                for e in entries
                if isinstance(e, dict)
                and e.get("role") in _ROLES
                and isinstance(e.get("content"), str)
                and isinstance(e.get("timestamp"), (int, float))
                and not isinstance(e.get("timestamp"), bool)
            ]
            if valid:
                chats[chat_id] = valid[-self.max_messages:]
        self._chats = chats
        self.prune()
        log.info("Loaded conversation history for %d chats", len(self._chats))

    def save(self) -> bool:
        """Prune, then write the whole store. Returns False on failure."""
        self.prune()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(self.path, json.dumps(self._chats, ensure_ascii=False))
        except (OSError, TypeError, ValueError) as e:
            log.error("Error saving memory to %s: %s", self.path, e)
            return False
        log.debug("Saved conversation history for %d chats", len(self._chats))
        return True

    async def run_flusher(self, interval: float = 300.0) -> None:
        """Save every interval seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.save()


def _seconds(ts: float) -> float:
    """Older stores wrote epoch milliseconds."""
    ts = float(ts)
    if ts > 1e12:
        ts /= 1000
    return ts
