"""Channel interface and shared types.

Defines the contract between the daemon and messaging transports.
Each channel implements connect/send for its transport, pushes inbound
messages onto the daemon's intake queue, and reports connection state
to its listener (the ConnectionSupervisor that owns it).
"""

from __future__ import annotations

import asyncio
import collections
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from config import Config

log = logging.getLogger(__name__)


# ─── Faults ──────────────────────────────────────────────────────

class TransportFault(Exception):
    """Fault raised by a transport's underlying library or gateway.

    Recoverable: the owning supervisor forces a reconnect.
    """

    def __init__(self, transport: str, message: str = ""):
        super().__init__(message or f"{transport} transport fault")
        self.transport = transport


# ─── Types ───────────────────────────────────────────────────────

@dataclass
class InboundMessage:
    text: str
    sender: str           # "jid::participant" (whatsapp), phone number (signal)
    timestamp: float
    source: str           # "whatsapp", "signal"
    group_id: str | None = None
    message_id: str = ""


@dataclass
class SendResult:
    ok: bool
    error: str = ""


class ConnectionListener(Protocol):
    def on_open(self) -> None: ...
    def on_close(self, code: int | None = None, reason: str = "") -> None: ...
    def on_logged_out(self) -> None: ...
    def on_activity(self) -> None: ...


class Channel(Protocol):
    name: str
    listener: ConnectionListener | None
    reader_task: asyncio.Task | None

    async def connect(self) -> None: ...
    def abort(self) -> None: ...
    async def disconnect(self) -> None: ...
    async def send(self, target: str, text: str) -> SendResult: ...
    def health_snapshot(self) -> dict: ...


# ─── Deduplicator ────────────────────────────────────────────────

class Deduplicator:
    """Bounded FIFO cache of recently seen wire message ids."""

    def __init__(self, max_size: int = 100):
        self.max_size = max_size
        self._seen: collections.OrderedDict[str, None] = collections.OrderedDict()

    def seen(self, message_id: str) -> bool:
        """Record message_id. Returns True if it was already recorded."""
        if message_id in self._seen:
            return True
        self._seen[message_id] = None
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return False

    def __len__(self) -> int:
        return len(self._seen)


# ─── Factory ─────────────────────────────────────────────────────

def create_channels(config: Config, queue: asyncio.Queue) -> dict[str, Channel]:
    """Factory: create every enabled channel from config, keyed by name."""
    channels: dict[str, Channel] = {}

    if config.whatsapp_enabled:
        from .whatsapp import WhatsAppChannel
        channels["whatsapp"] = WhatsAppChannel(
            url=config.whatsapp_url,
            queue=queue,
            send_timeout=config.whatsapp_send_timeout,
            dedup_size=config.whatsapp_dedup_size,
            heartbeat=config.whatsapp_heartbeat,
        )
    if config.signal_enabled:
        from .rpc import RPCChannel
        account = config.signal_account
        if not account:
            raise ValueError("Signal account not configured ([signal] account or RELAYD_SIGNAL_ACCOUNT)")
        channels["signal"] = RPCChannel(
            account=account,
            queue=queue,
            host=config.signal_host,
            port=config.signal_port,
            socket_path=config.signal_socket_path,
            request_timeout=config.signal_request_timeout,
            max_pending=config.signal_max_pending,
        )
    if not channels:
        raise ValueError("No channels enabled")
    log.debug("Channels: %s", ", ".join(channels))
    return channels
