"""Shared fixtures for the relayd test suite.

All tests use temporary directories and in-process fakes.
Nothing talks to a real gateway, RPC daemon or LLM backend.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from channels import SendResult  # noqa: E402
from memory import ConversationMemory  # noqa: E402
from providers import LLMResponse  # noqa: E402


class FakeProvider:
    """LLM backend double: canned model list and replies, records calls."""

    def __init__(self, models=None, reply="Hi there!", delay=0.0, error=None):
        self.models = models if models is not None else [
            "kilo/auto", "openai/gpt-4o", "minimax/minimax-m2.5:free", "z-ai/glm-5:free",
        ]
        self.reply = reply
        self.delay = delay
        self.error = error
        self.list_error = None
        self.calls = []

    async def list_models(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.models)

    async def complete(self, model, system, messages, **kwargs):
        self.calls.append({"model": model, "system": system, "messages": messages})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return LLMResponse(text=self.reply, model=model)


class FakeChannel:
    """Channel double recording sends and lifecycle calls."""

    def __init__(self, name="whatsapp", fail_connect=False, send_ok=True):
        self.name = name
        self.listener = None
        self.reader_task = None
        self.fail_connect = fail_connect
        self.send_ok = send_ok
        self.sent = []
        self.connects = 0
        self.aborts = 0
        self.disconnected = False

    async def connect(self):
        self.connects += 1
        if self.fail_connect:
            raise ConnectionError("gateway unreachable")

    def abort(self):
        self.aborts += 1

    async def disconnect(self):
        self.disconnected = True

    async def send(self, target, text):
        self.sent.append((target, text))
        if self.send_ok:
            return SendResult(ok=True)
        return SendResult(ok=False, error="not connected")

    def health_snapshot(self):
        return {"connected": not self.fail_connect}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep host environment overrides out of config tests."""
    for var in ("RELAYD_LLM_KEY", "RELAYD_SIGNAL_ACCOUNT", "RELAYD_ADMIN", "PORT"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def minimal_toml_data():
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "bot": {
            "name": "TestBot",
            "default_model": "kilo/auto",
            "admin": "31600000001",
        },
        "llm": {
            "base_url": "https://llm.example.test/v1",
        },
        "whatsapp": {
            "enabled": True,
            "url": "ws://127.0.0.1:8085/ws",
        },
        "signal": {
            "enabled": True,
            "account": "+31600000000",
        },
    }


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def memory(tmp_path):
    return ConversationMemory(tmp_path / "data" / "memory.json")


@pytest.fixture
def make_provider():
    """Factory for FakeProvider with custom models/reply/delay/error."""
    return FakeProvider


@pytest.fixture
def make_channel():
    """Factory for FakeChannel doubles."""
    return FakeChannel
