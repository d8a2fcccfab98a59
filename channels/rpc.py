"""Signal channel via a JSON-RPC stream (signal-cli daemon style).

One persistent TCP or Unix stream. Every line is one JSON object:
requests we send carry an id and are answered by a response line with
the same id; inbound chat messages arrive as unsolicited "receive"
notifications.
"""

from __future__ import annotations

import asyncio
import collections
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from . import ConnectionListener, InboundMessage, SendResult

log = logging.getLogger(__name__)

GROUP_PREFIX = "group:"

_READ_CHUNK = 65536


class RPCError(Exception):
    """A JSON-RPC call failed (error response, eviction, or closed stream)."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class RPCTimeout(RPCError):
    """No response arrived before the request deadline."""


# ─── Line Parser ─────────────────────────────────────────────────

class LineBuffer:
    """Incremental newline splitter.

    Bytes are appended as they arrive; complete lines are returned and the
    trailing partial line is kept until the next feed().
    """

    def __init__(self):
        self._buf = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        self._buf.extend(data)
        lines = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            line = bytes(self._buf[:idx]).strip()
            del self._buf[:idx + 1]
            if line:
                lines.append(line)
        return lines

    @property
    def pending(self) -> bytes:
        return bytes(self._buf)


# ─── Pending Requests ────────────────────────────────────────────

@dataclass
class PendingRequest:
    id: str
    created_at: float
    deadline: float
    future: asyncio.Future


class PendingRequestTable:
    """Outstanding calls keyed by request id, oldest first.

    Capped: registering past max_size rejects and drops the oldest entry.
    """

    def __init__(self, max_size: int = 50):
        self.max_size = max_size
        self._pending: collections.OrderedDict[str, PendingRequest] = collections.OrderedDict()

    def register(self, request_id: str, timeout: float) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        now = time.time()
        self._pending[request_id] = PendingRequest(
            id=request_id, created_at=now, deadline=now + timeout, future=future,
        )
        while len(self._pending) > self.max_size:
            _, oldest = self._pending.popitem(last=False)
            log.warning("Pending request table full, evicting request %s", oldest.id)
            if not oldest.future.done():
                oldest.future.set_exception(RPCError(f"request {oldest.id} evicted"))
        return future

    def resolve(self, request_id: str, result: Any) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, request_id: str, error: Exception) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def remove(self, request_id: str) -> None:
        self._pending.pop(request_id, None)

    def reject_all(self, error: Exception) -> int:
        count = 0
        for request_id in list(self._pending):
            if self.reject(request_id, error):
                count += 1
        return count

    def ids(self) -> list[str]:
        return list(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)


# ─── Channel ─────────────────────────────────────────────────────

class RPCChannel:
    name = "signal"

    def __init__(
        self,
        account: str,
        queue: asyncio.Queue,
        host: str = "127.0.0.1",
        port: int = 7583,
        socket_path: str = "",
        request_timeout: float = 10.0,
        max_pending: int = 50,
    ):
        self.account = account
        self.queue = queue
        self.host = host
        self.port = port
        self.socket_path = socket_path
        self.request_timeout = request_timeout
        self.listener: ConnectionListener | None = None
        self.reader_task: asyncio.Task | None = None

        self._writer: asyncio.StreamWriter | None = None
        self._lines = LineBuffer()
        self._pending = PendingRequestTable(max_size=max_pending)
        self._next_id = 0

    @property
    def address(self) -> str:
        return self.socket_path or f"{self.host}:{self.port}"

    @property
    def connected(self) -> bool:
        return self._writer is not None

    async def connect(self) -> None:
        """Open the stream and start the reader task."""
        try:
            if self.socket_path:
                reader, writer = await asyncio.open_unix_connection(self.socket_path)
            else:
                reader, writer = await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            log.error("Cannot connect to RPC stream %s: %s", self.address, e)
            raise ConnectionError(f"RPC stream unreachable ({self.address}): {e}") from e

        self._writer = writer
        self._lines = LineBuffer()
        log.info("RPC stream connected: %s (account %s)", self.address, self.account)
        self.reader_task = asyncio.create_task(
            self._read_loop(reader, writer), name=f"{self.name}-reader",
        )
        if self.listener:
            self.listener.on_open()

    def abort(self) -> None:
        """Drop the current stream without reporting a close."""
        writer = self._writer
        self._writer = None
        self._pending.reject_all(RPCError("connection aborted"))
        if writer is not None:
            writer.close()
        task = self.reader_task
        self.reader_task = None
        if task is not None and not task.done():
            task.cancel()

    async def disconnect(self) -> None:
        task = self.reader_task
        self.abort()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        reason = "eof"
        try:
            while True:
                chunk = await reader.read(_READ_CHUNK)
                if not chunk:
                    log.info("RPC stream closed by peer")
                    break
                for line in self._lines.feed(chunk):
                    self._handle_line(line)
        except OSError as e:
            reason = str(e) or type(e).__name__
            log.warning("RPC stream error: %s", reason)
        finally:
            # abort() already detached this writer; nothing to report
            if writer is self._writer:
                self._writer = None
                dropped = self._pending.reject_all(RPCError("stream closed"))
                if dropped:
                    log.warning("Stream closed with %d pending request(s)", dropped)
                writer.close()
                if self.listener:
                    self.listener.on_close(None, reason)

    def _handle_line(self, line: bytes) -> None:
        try:
            msg = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.warning("Malformed RPC line skipped: %r", line[:200])
            return
        if not isinstance(msg, dict):
            log.warning("RPC line is not an object, skipped")
            return

        if self.listener:
            self.listener.on_activity()

        if msg.get("method") == "receive":
            params = msg.get("params")
            if isinstance(params, dict):
                try:
                    self._handle_receive(params)
                except (AttributeError, TypeError, ValueError) as e:
                    log.warning("Malformed receive notification skipped: %s", e)
            return

        req_id = msg.get("id")
        if req_id is not None and str(req_id) in self._pending:
            error = msg.get("error")
            if error is not None:
                if isinstance(error, dict):
                    self._pending.reject(str(req_id), RPCError(
                        error.get("message", "unknown error"), error.get("code"),
                    ))
                else:
                    self._pending.reject(str(req_id), RPCError(str(error)))
            else:
                self._pending.resolve(str(req_id), msg.get("result"))
            return

        log.debug("Unmatched RPC line (id=%s, method=%s)", req_id, msg.get("method"))

    def _handle_receive(self, params: dict) -> None:
        envelope = params.get("envelope")
        if not isinstance(envelope, dict):
            return
        data = envelope.get("dataMessage")
        if not isinstance(data, dict):
            return
        text = data.get("message")
        if not text or not isinstance(text, str):
            return

        sender = envelope.get("sourceNumber") or envelope.get("source") or ""
        if not isinstance(sender, str) or not sender or sender == self.account:
            return

        group_info = data.get("groupInfo")
        group_id = group_info.get("groupId") if isinstance(group_info, dict) else None
        if group_id is not None and not isinstance(group_id, str):
            group_id = str(group_id)
        ts = _millis(envelope.get("timestamp"))

        log.info("Received from %s%s: %s", sender,
                 f" (group {group_id})" if group_id else "", text[:200])
        msg = InboundMessage(
            text=text,
            sender=sender,
            timestamp=ts / 1000 if ts else time.time(),
            source=self.name,
            group_id=group_id,
            message_id=str(ts),
        )
        try:
            self.queue.put_nowait(msg)
        except asyncio.QueueFull:
            log.warning("Intake queue full, dropping message from %s", sender)

    async def call(self, method: str, params: dict) -> Any:
        """Send one request line and wait for its correlated response."""
        writer = self._writer
        if writer is None:
            raise RPCError("not connected")

        self._next_id += 1
        req_id = str(self._next_id)
        future = self._pending.register(req_id, self.request_timeout)
        line = json.dumps({
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": req_id,
        }) + "\n"
        try:
            writer.write(line.encode("utf-8"))
            await writer.drain()
        except OSError as e:
            self._pending.remove(req_id)
            raise RPCError(f"write failed: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except TimeoutError:
            self._pending.remove(req_id)
            raise RPCTimeout(
                f"{method} request {req_id} timed out after {self.request_timeout:g}s"
            ) from None

    async def send(self, target: str, text: str) -> SendResult:
        params: dict[str, Any] = {"account": self.account, "message": text}
        if target.startswith(GROUP_PREFIX):
            params["groupId"] = target[len(GROUP_PREFIX):]
        else:
            params["recipient"] = [target]

        try:
            await self.call("send", params)
        except RPCError as e:
            log.error("Failed to send message to %s: %s", target, e)
            return SendResult(ok=False, error=str(e))

        if self.listener:
            self.listener.on_activity()
        log.info("Sent message to %s", target)
        return SendResult(ok=True)

    def health_snapshot(self) -> dict:
        return {
            "connected": self.connected,
            "address": self.address,
            "pending_requests": len(self._pending),
        }


def _millis(value: Any) -> int:
    """Envelope timestamp in ms; 0 when absent or unparseable."""
    if isinstance(value, bool):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
