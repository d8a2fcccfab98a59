"""HTTP health endpoint for relayd.

Read-only: lets a container platform or uptime monitor see whether the
daemon and its transports are alive.

Endpoints:
    GET /        — Plain-text liveness line
    GET /health  — JSON status snapshot (transport states, last activity, uptime)
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from aiohttp import web

log = logging.getLogger(__name__)


class HTTPApi:
    """Health/status server running alongside the transports."""

    def __init__(
        self,
        host: str,
        port: int,
        get_status: Callable[[], dict],
        agent_name: str = "relayd",
    ):
        self.host = host
        self.port = port
        self.agent_name = agent_name
        self._get_status = get_status
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_root)
        app.router.add_get("/health", self._handle_health)
        return app

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("HTTP server listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("HTTP server stopped")

    # ─── Handlers ─────────────────────────────────────────────────

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.Response(text=f"{self.agent_name} is running.")

    async def _handle_health(self, request: web.Request) -> web.Response:
        try:
            status = self._get_status()
        except Exception:
            log.exception("Failed to build status snapshot")
            return web.json_response({"status": "error"}, status=500)
        return web.json_response(status)
