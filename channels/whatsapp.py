"""WhatsApp channel via a multi-device gateway websocket.

The gateway owns pairing, credentials and the end-to-end crypto session.
It forwards session events as JSON frames (connection.update,
messages.upsert, ack, error) and accepts sendMessage actions, each
acknowledged by id.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

import aiohttp

from . import ConnectionListener, Deduplicator, InboundMessage, SendResult, TransportFault
from .rpc import PendingRequestTable, RPCError

log = logging.getLogger(__name__)

# Gateway status code for a session that was unlinked from the phone
LOGGED_OUT_STATUS = 401


class WhatsAppChannel:
    name = "whatsapp"

    def __init__(
        self,
        url: str,
        queue: asyncio.Queue,
        send_timeout: float = 10.0,
        dedup_size: int = 100,
        heartbeat: float = 30.0,
    ):
        self.url = url
        self.queue = queue
        self.send_timeout = send_timeout
        self.heartbeat = heartbeat
        self.listener: ConnectionListener | None = None
        self.reader_task: asyncio.Task | None = None

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        # Survives reconnects: the gateway redelivers recent messages on resume
        self._dedup = Deduplicator(max_size=dedup_size)
        self._acks = PendingRequestTable()
        self._next_id = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        """Open the gateway websocket and start the reader task.

        The session counts as open only once the gateway reports
        connection.update "open".
        """
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, connect=10.0))
        try:
            ws = await session.ws_connect(self.url, heartbeat=self.heartbeat)
        except (aiohttp.ClientError, OSError) as e:
            await session.close()
            log.error("Cannot connect to multi-device gateway %s: %s", self.url, e)
            raise ConnectionError(f"Gateway unreachable ({self.url}): {e}") from e

        self._session = session
        self._ws = ws
        log.info("Gateway websocket connected: %s", self.url)
        self.reader_task = asyncio.create_task(
            self._read_loop(session, ws), name=f"{self.name}-reader",
        )

    def abort(self) -> None:
        """Drop the current websocket without reporting a close."""
        self._ws = None
        self._session = None
        self._acks.reject_all(RPCError("connection aborted"))
        task = self.reader_task
        self.reader_task = None
        if task is not None and not task.done():
            task.cancel()

    async def disconnect(self) -> None:
        task = self.reader_task
        self.abort()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _read_loop(self, session: aiohttp.ClientSession,
                         ws: aiohttp.ClientWebSocketResponse) -> None:
        code = None
        fault = False
        try:
            async for frame in ws:
                if frame.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(frame.data)
                elif frame.type == aiohttp.WSMsgType.ERROR:
                    log.warning("Gateway websocket error: %s", ws.exception())
                    break
            code = ws.close_code
        except TransportFault:
            fault = True
            raise
        except (aiohttp.ClientError, OSError) as e:
            log.warning("Gateway websocket failed: %s", e)
        finally:
            current = ws is self._ws
            if current:
                self._ws = None
                self._session = None
                self._acks.reject_all(RPCError("websocket closed"))
            await ws.close()
            await session.close()
            # Faults are reported through the task exception instead
            if current and not fault and self.listener:
                log.info("Gateway websocket closed (code: %s)", code)
                self.listener.on_close(code, "websocket closed")

    def _handle_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Malformed gateway frame skipped: %r", raw[:200])
            return
        if not isinstance(frame, dict):
            return

        event = frame.get("event")
        data = frame.get("data") or {}

        if event in ("connection.update", "messages.upsert"):
            if not isinstance(data, dict):
                log.warning("Gateway %s frame without object data skipped", event)
                return
            try:
                if event == "connection.update":
                    self._handle_connection_update(data)
                else:
                    self._handle_upsert(data)
            except (AttributeError, TypeError, ValueError) as e:
                log.warning("Malformed gateway %s frame skipped: %s", event, e)
        elif event == "ack":
            ack_id = str(frame.get("id", ""))
            error = frame.get("error")
            if error:
                self._acks.reject(ack_id, RPCError(str(error)))
            else:
                self._acks.resolve(ack_id, frame.get("result"))
        elif event == "error":
            origin = frame.get("origin", "gateway")
            raise TransportFault(self.name, f"{origin}: {frame.get('message', 'unknown error')}")
        else:
            log.debug("Ignoring gateway event: %s", event)

    def _handle_connection_update(self, data: dict) -> None:
        connection = data.get("connection")
        if connection == "open":
            log.info("WhatsApp session open")
            if self.listener:
                self.listener.on_open()
        elif connection == "close":
            code = data.get("statusCode")
            if code == LOGGED_OUT_STATUS:
                log.error("WhatsApp logged out. Re-link the device through the gateway.")
                if self.listener:
                    self.listener.on_logged_out()
            else:
                log.warning("WhatsApp session closed (code: %s)", code)
                if self.listener:
                    self.listener.on_close(code, f"close_code_{code}")
        else:
            log.debug("Connection update: %s", connection)

    def _handle_upsert(self, data: dict) -> None:
        if data.get("type") != "notify":
            return
        messages = data.get("messages")
        if not isinstance(messages, list) or not messages:
            return
        msg = messages[0]
        if not isinstance(msg, dict):
            return
        content = msg.get("message")
        key = msg.get("key") or {}
        if not isinstance(content, dict) or not isinstance(key, dict):
            return
        if not content or key.get("fromMe"):
            return

        msg_id = str(key.get("id") or "")
        if msg_id and self._dedup.seen(msg_id):
            log.debug("Duplicate message %s dropped", msg_id)
            return

        if self.listener:
            self.listener.on_activity()

        if "conversation" in content:
            text = content["conversation"]
        elif "extendedTextMessage" in content:
            extended = content["extendedTextMessage"]
            text = extended.get("text", "") if isinstance(extended, dict) else ""
        else:
            return
        if not text or not isinstance(text, str):
            return

        remote_jid = key.get("remoteJid") or ""
        if not isinstance(remote_jid, str):
            return
        participant = msg.get("participant") or key.get("participant") or remote_jid

        log.info("Received from %s (JID: %s): %s", participant, remote_jid, text[:200])
        inbound = InboundMessage(
            text=text,
            sender=f"{remote_jid}::{participant}",
            timestamp=_seconds(msg.get("messageTimestamp")),
            source=self.name,
            group_id=remote_jid if remote_jid.endswith("@g.us") else None,
            message_id=msg_id,
        )
        try:
            self.queue.put_nowait(inbound)
        except asyncio.QueueFull:
            log.warning("Intake queue full, dropping message from %s", participant)

    async def send(self, target: str, text: str) -> SendResult:
        """Send a text message; waits for the gateway ack."""
        ws = self._ws
        if ws is None or ws.closed:
            log.error("Gateway not connected, cannot send to %s", target)
            return SendResult(ok=False, error="not connected")

        self._next_id += 1
        ack_id = str(self._next_id)
        future = self._acks.register(ack_id, self.send_timeout)
        log.info("Sending reply to: %s", target)
        try:
            await ws.send_json({
                "action": "sendMessage",
                "id": ack_id,
                "jid": target,
                "content": {"text": text},
            })
            await asyncio.wait_for(future, timeout=self.send_timeout)
        except TimeoutError:
            self._acks.remove(ack_id)
            log.error("Send to %s not acknowledged within %gs", target, self.send_timeout)
            return SendResult(ok=False, error=f"not acknowledged within {self.send_timeout:g}s")
        except (RPCError, aiohttp.ClientError, OSError) as e:
            self._acks.remove(ack_id)
            log.error("Send error to %s: %s", target, e)
            return SendResult(ok=False, error=str(e))

        if self.listener:
            self.listener.on_activity()
        log.info("Message delivered to %s", target)
        return SendResult(ok=True)

    def health_snapshot(self) -> dict:
        return {
            "connected": self.connected,
            "gateway": self.url,
            "pending_acks": len(self._acks),
            "dedup_cache": len(self._dedup),
        }


def _seconds(value) -> float:
    """messageTimestamp in seconds; now when absent or unparseable."""
    if isinstance(value, bool) or not value:
        return time.time()
    try:
        return float(value)
    except (TypeError, ValueError):
        return time.time()
