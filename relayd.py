#!/usr/bin/env python3
"""relayd — a two-transport chat bridge for LLM conversations.

Entry point. Wires config → channels → supervisors → router → commands.
Runs the health monitor, the watchdog, the memory flusher and the HTTP
health endpoint, and turns uncaught faults into reconnects or a clean
process exit for the external supervisor (systemd, container runtime).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import os
import signal
import sys
import time
from collections.abc import Callable
from typing import Any

from channels import TransportFault, create_channels
from commands import CommandProcessor
from config import Config, ConfigError, load_config
from memory import ConversationMemory
from providers import create_provider
from router import Router
from supervisor import ConnectionSupervisor, ExponentialBackoff, FixedBackoff

log = logging.getLogger("relayd")


class RelaydDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.start_time = time.time()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self.channels: dict[str, Any] = {}
        self.supervisors: dict[str, ConnectionSupervisor] = {}
        self.memory: ConversationMemory | None = None
        self.provider: Any = None
        self.processor: CommandProcessor | None = None
        self.router: Router | None = None
        self._http_api: Any = None
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._exit: Callable[[int], None] = os._exit

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald / container logs)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "openai", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _init_memory(self) -> None:
        self.memory = ConversationMemory(
            self.config.memory_file,
            max_messages=self.config.memory_max_messages,
            max_age=self.config.memory_max_age,
        )
        self.memory.load()

    def _init_provider(self) -> None:
        api_key = self.config.llm_api_key
        if not api_key:
            log.warning("No LLM API key configured (RELAYD_LLM_KEY)")
        self.provider = create_provider(self.config.llm_config, api_key)
        log.info("LLM backend: %s", self.config.llm_config.get("base_url", ""))

    def _init_processor(self) -> None:
        cfg = self.config
        self.processor = CommandProcessor(
            self.provider,
            self.memory,
            default_model=cfg.default_model,
            system_prompt=cfg.system_prompt,
            admin=cfg.admin,
            bot_name=cfg.bot_name,
            admin_name=cfg.admin_name,
            query_timeout=cfg.query_timeout,
            free_marker=cfg.free_marker,
            always_models=cfg.always_models,
            max_models=cfg.max_models,
            fallback_models=cfg.fallback_models,
        )
        if not cfg.admin:
            log.warning("No admin configured; /restart is disabled for everyone")

    def _init_channels(self) -> None:
        cfg = self.config
        self.channels = create_channels(cfg, self.queue)
        for name, channel in self.channels.items():
            if name == "whatsapp":
                backoff = ExponentialBackoff(cfg.backoff_initial, cfg.backoff_max)
                watchdog = cfg.whatsapp_watchdog
            else:
                backoff = FixedBackoff(cfg.signal_reconnect_delay)
                watchdog = cfg.signal_watchdog
            self.supervisors[name] = ConnectionSupervisor(
                channel,
                backoff,
                dead_check_limit=cfg.dead_check_limit,
                watchdog=watchdog,
                watchdog_grace=cfg.watchdog_grace,
                never_open_limit=cfg.never_open_limit,
                inactivity_limit=cfg.inactivity_limit,
                on_fatal=self._on_fatal,
                boot_time=self.start_time,
            )
        log.info("Channels: %s", ", ".join(self.channels))

    def _init_router(self) -> None:
        self.router = Router(
            self.processor,
            self.channels,
            terminate=self.terminate,
            restart_notice=self.config.restart_notice,
            restart_delay=self.config.restart_delay,
        )

    # ─── Termination & Faults ────────────────────────────────────

    def terminate(self, code: int, reason: str) -> None:
        """Exit immediately so the external supervisor restarts the process."""
        log.error("Terminating process (exit %d): %s", code, reason)
        if self.memory is not None:
            self.memory.save()
        logging.shutdown()
        self._exit(code)

    def _on_fatal(self, exc: BaseException) -> None:
        self.terminate(1, f"fatal fault: {exc!r}")

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        if exc is None:
            log.error("Event loop error: %s", context.get("message", "unknown"))
            return
        if isinstance(exc, TransportFault):
            supervisor = self.supervisors.get(exc.transport)
            if supervisor is not None:
                supervisor.handle_fault(exc)
                return
        log.critical("Uncaught exception: %s", context.get("message", ""), exc_info=exc)
        self.terminate(1, f"uncaught {type(exc).__name__}: {exc}")

    # ─── Timers ──────────────────────────────────────────────────

    async def _every(self, interval: float, tick: Callable[[], None], name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                tick()
            except Exception:
                log.exception("%s tick failed", name)

    def _monitor_tick(self) -> None:
        for supervisor in self.supervisors.values():
            supervisor.health_check()

    def _watchdog_tick(self) -> None:
        for supervisor in self.supervisors.values():
            reason = supervisor.watchdog_expired()
            if reason:
                log.error("[Watchdog] %s. Restarting process!", reason)
                self.terminate(1, reason)
                return

    # ─── Status ──────────────────────────────────────────────────

    def _build_status(self) -> dict:
        """Build status dict for HTTP /health."""
        state = self.processor.state if self.processor else None
        return {
            "status": "running",
            "pid": os.getpid(),
            "uptime": round(time.time() - self.start_time),
            "transports": {
                name: supervisor.snapshot()
                for name, supervisor in self.supervisors.items()
            },
            "active_model": state.active_model if state else "",
            "sleeping": state.sleeping if state else False,
            "memory_chats": self.memory.chat_count if self.memory else 0,
            "queue_depth": self.queue.qsize(),
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
        }

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigterm():
            log.info("Shutdown signal received, stopping")
            self._stop_event.set()

        try:
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    # ─── Main ────────────────────────────────────────────────────

    async def run(self) -> None:
        """Main entry point — starts all components and runs until stopped."""
        cfg = self.config
        self._setup_logging()
        log.info("Starting relayd for '%s'", cfg.bot_name)

        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)

        try:
            self._init_memory()
            self._init_provider()
            self._init_processor()
            self._init_channels()
            self._init_router()
            self._setup_signals(loop)

            if cfg.http_enabled:
                from channels.http_api import HTTPApi
                self._http_api = HTTPApi(
                    host=cfg.http_host,
                    port=cfg.http_port,
                    get_status=self._build_status,
                    agent_name=cfg.bot_name,
                )
                await self._http_api.start()

            for supervisor in self.supervisors.values():
                await supervisor.start()

            router_task = asyncio.create_task(self.router.run(self.queue), name="router")
            self._tasks = [
                router_task,
                asyncio.create_task(
                    self.memory.run_flusher(cfg.memory_flush_interval), name="memory-flush",
                ),
                asyncio.create_task(
                    self._every(cfg.monitor_interval, self._monitor_tick, "monitor"),
                    name="monitor",
                ),
                asyncio.create_task(
                    self._every(cfg.watchdog_interval, self._watchdog_tick, "watchdog"),
                    name="watchdog",
                ),
            ]

            log.info("relayd running (PID %d)", os.getpid())
            stop_task = asyncio.create_task(self._stop_event.wait())
            await asyncio.wait({router_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            stop_task.cancel()

        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for supervisor in self.supervisors.values():
            try:
                await supervisor.stop()
            except Exception as e:
                log.warning("Failed to stop %s supervisor: %s", supervisor.name, e)

        if self._http_api:
            await self._http_api.stop()

        if self.memory is not None:
            self.memory.save()
        log.info("relayd stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="relayd — bridge WhatsApp and Signal chats to an LLM gateway",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("RELAYD_CONFIG", "./relayd.toml"),
        help="Path to config file (default: $RELAYD_CONFIG or ./relayd.toml)",
    )
    parser.add_argument("--no-whatsapp", action="store_true", help="Disable the WhatsApp transport")
    parser.add_argument("--no-signal", action="store_true", help="Disable the Signal transport")
    parser.add_argument("--no-http", action="store_true", help="Disable the HTTP health endpoint")
    args = parser.parse_args()

    # Build overrides from CLI args
    overrides = {}
    if args.no_whatsapp:
        overrides["whatsapp.enabled"] = False
    if args.no_signal:
        overrides["signal.enabled"] = False
    if args.no_http:
        overrides["http.enabled"] = False

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    daemon = RelaydDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
