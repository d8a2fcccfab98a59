"""Tests for channels/http_api.py — liveness and health endpoints."""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from channels.http_api import HTTPApi


def _make_api(get_status=None):
    return HTTPApi(
        host="127.0.0.1",
        port=0,  # unused — we use aiohttp test client
        get_status=get_status or (lambda: {
            "status": "running",
            "uptime": 42,
            "transports": {"whatsapp": {"state": "open", "connected": True}},
        }),
        agent_name="TestBot",
    )


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_root_liveness(self):
        async with TestClient(TestServer(_make_api().build_app())) as client:
            resp = await client.get("/")
            assert resp.status == 200
            assert await resp.text() == "TestBot is running."

    @pytest.mark.asyncio
    async def test_health_snapshot(self):
        async with TestClient(TestServer(_make_api().build_app())) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "running"
            assert data["transports"]["whatsapp"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_health_reflects_live_state(self):
        state = {"n": 0}

        def status():
            state["n"] += 1
            return {"status": "running", "calls": state["n"]}

        async with TestClient(TestServer(_make_api(status).build_app())) as client:
            await client.get("/health")
            resp = await client.get("/health")
            assert (await resp.json())["calls"] == 2

    @pytest.mark.asyncio
    async def test_health_snapshot_failure(self):
        def broken():
            raise RuntimeError("boom")

        async with TestClient(TestServer(_make_api(broken).build_app())) as client:
            resp = await client.get("/health")
            assert resp.status == 500
            assert (await resp.json())["status"] == "error"

    @pytest.mark.asyncio
    async def test_unknown_path(self):
        async with TestClient(TestServer(_make_api().build_app())) as client:
            resp = await client.get("/api/v1/chat")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_post_not_allowed(self):
        async with TestClient(TestServer(_make_api().build_app())) as client:
            resp = await client.post("/health")
            assert resp.status == 405


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        api = _make_api()
        await api.start()
        assert api._runner is not None
        await api.stop()
        assert api._runner is None
