"""Tests for channels/rpc.py — line parser, pending-request table, receive
mapping, request/response correlation, and a live stream against a local
asyncio server."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from channels.rpc import (
    GROUP_PREFIX,
    LineBuffer,
    PendingRequestTable,
    RPCChannel,
    RPCError,
)
from supervisor import ConnectionSupervisor, FixedBackoff

ACCOUNT = "+31600000000"


def _make_channel(queue=None, **overrides):
    defaults = {
        "account": ACCOUNT,
        "queue": queue if queue is not None else asyncio.Queue(),
        "host": "127.0.0.1",
        "port": 7583,
        "request_timeout": 2.0,
    }
    defaults.update(overrides)
    return RPCChannel(**defaults)


def _receive_line(text, source="+31611111111", group_id=None, ts=1700000000000):
    data = {"message": text}
    if group_id:
        data["groupInfo"] = {"groupId": group_id}
    return json.dumps({
        "jsonrpc": "2.0",
        "method": "receive",
        "params": {"envelope": {
            "sourceNumber": source,
            "timestamp": ts,
            "dataMessage": data,
        }},
    }).encode()


async def _start_server(handler):
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port


def _responder(requests, reply=True):
    """Server handler: record every request line, answer it if reply."""
    async def handle(reader, writer):
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                req = json.loads(line)
                requests.append(req)
                if reply:
                    resp = {"jsonrpc": "2.0", "id": req["id"], "result": {"timestamp": 1}}
                    writer.write((json.dumps(resp) + "\n").encode())
                    await writer.drain()
        finally:
            writer.close()
    return handle


# ─── Line Parser ──────────────────────────────────────────────────


class TestLineBuffer:
    def test_single_line(self):
        buf = LineBuffer()
        assert buf.feed(b'{"a": 1}\n') == [b'{"a": 1}']

    def test_line_split_across_chunks(self):
        buf = LineBuffer()
        assert buf.feed(b'{"a":') == []
        assert buf.pending == b'{"a":'
        assert buf.feed(b' 1}\n{"b"') == [b'{"a": 1}']
        assert buf.pending == b'{"b"'
        assert buf.feed(b": 2}\n") == [b'{"b": 2}']
        assert buf.pending == b""

    def test_multiple_lines_one_chunk(self):
        buf = LineBuffer()
        assert buf.feed(b"one\ntwo\nthree\n") == [b"one", b"two", b"three"]

    def test_blank_lines_dropped(self):
        buf = LineBuffer()
        assert buf.feed(b"\n\r\n  \nx\n") == [b"x"]


# ─── Pending Requests ─────────────────────────────────────────────


class TestPendingRequestTable:
    @pytest.mark.asyncio
    async def test_resolve(self):
        table = PendingRequestTable()
        fut = table.register("1", 10.0)
        assert "1" in table
        assert table.resolve("1", {"ok": True}) is True
        assert await fut == {"ok": True}
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_resolve_unknown(self):
        table = PendingRequestTable()
        assert table.resolve("nope", None) is False

    @pytest.mark.asyncio
    async def test_reject(self):
        table = PendingRequestTable()
        fut = table.register("1", 10.0)
        table.reject("1", RPCError("bad", code=-1))
        with pytest.raises(RPCError, match="bad"):
            await fut

    @pytest.mark.asyncio
    async def test_overflow_evicts_oldest(self):
        table = PendingRequestTable(max_size=50)
        futures = [table.register(str(i), 10.0) for i in range(1, 52)]
        assert len(table) == 50
        assert "1" not in table
        assert table.ids()[0] == "2"
        assert table.ids()[-1] == "51"
        with pytest.raises(RPCError, match="evicted"):
            await futures[0]
        assert not futures[1].done()

    @pytest.mark.asyncio
    async def test_reject_all(self):
        table = PendingRequestTable()
        futures = [table.register(str(i), 10.0) for i in range(3)]
        assert table.reject_all(RPCError("closed")) == 3
        assert len(table) == 0
        for fut in futures:
            with pytest.raises(RPCError):
                await fut


# ─── Line Handling ────────────────────────────────────────────────


class TestHandleLine:
    def test_malformed_line_skipped(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        ch._handle_line(b"{not json")
        ch._handle_line(b"[1, 2]")
        assert queue.empty()

    def test_direct_message(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        ch._handle_line(_receive_line("hello"))
        msg = queue.get_nowait()
        assert msg.text == "hello"
        assert msg.sender == "+31611111111"
        assert msg.source == "signal"
        assert msg.group_id is None
        assert msg.timestamp == 1700000000.0

    def test_group_message(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        ch._handle_line(_receive_line("hi all", group_id="abc=="))
        msg = queue.get_nowait()
        assert msg.group_id == "abc=="
        assert msg.sender == "+31611111111"

    def test_own_message_skipped(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        ch._handle_line(_receive_line("echo", source=ACCOUNT))
        assert queue.empty()

    def test_receipt_without_text_skipped(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        line = json.dumps({"method": "receive", "params": {"envelope": {
            "sourceNumber": "+31611111111", "receiptMessage": {"isRead": True},
        }}}).encode()
        ch._handle_line(line)
        assert queue.empty()

    def test_activity_reported(self):
        ch = _make_channel()
        ch.listener = MagicMock()
        ch._handle_line(_receive_line("hello"))
        ch.listener.on_activity.assert_called_once()

    def test_full_queue_drops(self):
        queue = asyncio.Queue(maxsize=1)
        ch = _make_channel(queue)
        ch._handle_line(_receive_line("one", ts=1))
        ch._handle_line(_receive_line("two", ts=2))
        assert queue.qsize() == 1

    def test_unexpected_field_types_skipped(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        lines = [
            {"method": "receive", "params": ["x"]},
            {"method": "receive", "params": {"envelope": "x"}},
            {"method": "receive", "params": {"envelope": {"sourceNumber": 42,
                                                          "dataMessage": {"message": "hi"}}}},
            {"method": "receive", "params": {"envelope": {"sourceNumber": "+31611111111",
                                                          "dataMessage": {"message": ["hi"]}}}},
        ]
        for line in lines:
            ch._handle_line(json.dumps(line).encode())
        assert queue.empty()

    def test_string_timestamp_parsed(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        ch._handle_line(_receive_line("hello", ts="1700000000000"))
        msg = queue.get_nowait()
        assert msg.timestamp == 1700000000.0

    def test_unparseable_timestamp_uses_now(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        ch._handle_line(_receive_line("hello", ts="yesterday"))
        msg = queue.get_nowait()
        assert msg.text == "hello"
        assert msg.timestamp > 0

    def test_group_info_not_an_object(self):
        queue = asyncio.Queue()
        ch = _make_channel(queue)
        line = json.dumps({"method": "receive", "params": {"envelope": {
            "sourceNumber": "+31611111111",
            "dataMessage": {"message": "hello", "groupInfo": "abc=="},
        }}}).encode()
        ch._handle_line(line)
        msg = queue.get_nowait()
        assert msg.group_id is None

    @pytest.mark.asyncio
    async def test_response_resolves_pending(self):
        ch = _make_channel()
        fut = ch._pending.register("7", 10.0)
        ch._handle_line(b'{"jsonrpc": "2.0", "id": "7", "result": {"timestamp": 5}}')
        assert await fut == {"timestamp": 5}

    @pytest.mark.asyncio
    async def test_error_response_rejects_pending(self):
        ch = _make_channel()
        fut = ch._pending.register("8", 10.0)
        ch._handle_line(b'{"jsonrpc": "2.0", "id": "8", "error": {"code": -32600, "message": "nope"}}')
        with pytest.raises(RPCError) as exc:
            await fut
        assert exc.value.code == -32600


# ─── Live Stream ──────────────────────────────────────────────────


class TestStream:
    @pytest.mark.asyncio
    async def test_send_direct(self):
        requests = []
        server, port = await _start_server(_responder(requests))
        ch = _make_channel(port=port)
        ch.listener = MagicMock()
        try:
            await ch.connect()
            ch.listener.on_open.assert_called_once()
            result = await ch.send("+31611111111", "hi")
            assert result.ok is True
            assert requests[0]["method"] == "send"
            assert requests[0]["params"] == {
                "account": ACCOUNT, "message": "hi", "recipient": ["+31611111111"],
            }
        finally:
            await ch.disconnect()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_send_group(self):
        requests = []
        server, port = await _start_server(_responder(requests))
        ch = _make_channel(port=port)
        try:
            await ch.connect()
            result = await ch.send(f"{GROUP_PREFIX}abc==", "hi group")
            assert result.ok is True
            params = requests[0]["params"]
            assert params["groupId"] == "abc=="
            assert "recipient" not in params
        finally:
            await ch.disconnect()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_sequential_request_ids(self):
        requests = []
        server, port = await _start_server(_responder(requests))
        ch = _make_channel(port=port)
        try:
            await ch.connect()
            await ch.send("+31611111111", "a")
            await ch.send("+31611111111", "b")
            assert [r["id"] for r in requests] == ["1", "2"]
        finally:
            await ch.disconnect()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_send_timeout(self):
        requests = []
        server, port = await _start_server(_responder(requests, reply=False))
        ch = _make_channel(port=port, request_timeout=0.1)
        try:
            await ch.connect()
            result = await ch.send("+31611111111", "hi")
            assert result.ok is False
            assert "timed out" in result.error
            assert len(ch._pending) == 0
        finally:
            await ch.disconnect()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_send_not_connected(self):
        ch = _make_channel()
        result = await ch.send("+31611111111", "hi")
        assert result.ok is False
        assert "not connected" in result.error

    @pytest.mark.asyncio
    async def test_push_reaches_queue(self):
        async def handle(reader, writer):
            writer.write(_receive_line("pushed") + b"\n")
            await writer.drain()
            await reader.read()
            writer.close()

        server, port = await _start_server(handle)
        queue = asyncio.Queue()
        ch = _make_channel(queue, port=port)
        try:
            await ch.connect()
            msg = await asyncio.wait_for(queue.get(), timeout=2.0)
            assert msg.text == "pushed"
        finally:
            await ch.disconnect()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_odd_payloads_do_not_stop_reader(self):
        async def handle(reader, writer):
            for line in (
                b'{"method": "receive", "params": {"envelope": {"timestamp": {},'
                b' "sourceNumber": "+31611111111", "dataMessage": {"message": "x",'
                b' "groupInfo": []}}}}',
                b'{"method": "receive", "params": 5}',
                b'{"id": [1], "error": "weird"}',
                b'"just a string"',
            ):
                writer.write(line + b"\n")
            writer.write(_receive_line("still here") + b"\n")
            await writer.drain()
            await reader.read()
            writer.close()

        server, port = await _start_server(handle)
        queue = asyncio.Queue()
        ch = _make_channel(queue, port=port)
        fatal = []
        sup = ConnectionSupervisor(ch, FixedBackoff(60.0), on_fatal=fatal.append)
        try:
            await sup.start()
            texts = []
            while "still here" not in texts:
                msg = await asyncio.wait_for(queue.get(), timeout=2.0)
                texts.append(msg.text)
            assert fatal == []
            assert not ch.reader_task.done()
            assert ch.connected is True
        finally:
            await sup.stop()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_peer_close_reports_once(self):
        async def handle(reader, writer):
            writer.close()

        server, port = await _start_server(handle)
        ch = _make_channel(port=port)
        ch.listener = MagicMock()
        try:
            await ch.connect()
            await asyncio.wait_for(ch.reader_task, timeout=2.0)
            ch.listener.on_close.assert_called_once_with(None, "eof")
            assert ch.connected is False
        finally:
            await ch.disconnect()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_abort_does_not_report_close(self):
        async def handle(reader, writer):
            await reader.read()
            writer.close()

        server, port = await _start_server(handle)
        ch = _make_channel(port=port)
        ch.listener = MagicMock()
        try:
            await ch.connect()
            ch.abort()
            await asyncio.sleep(0.05)
            ch.listener.on_close.assert_not_called()
        finally:
            await ch.disconnect()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_unreachable_socket_raises_connection_error(self, tmp_path):
        ch = _make_channel(socket_path=str(tmp_path / "missing.sock"))
        with pytest.raises(ConnectionError):
            await ch.connect()

    def test_health_snapshot(self):
        ch = _make_channel()
        snap = ch.health_snapshot()
        assert snap == {"connected": False, "address": "127.0.0.1:7583", "pending_requests": 0}
