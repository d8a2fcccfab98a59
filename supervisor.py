"""Connection supervisor — per-transport session lifecycle.

Owns one channel's Session: connect, detect death, reconnect with
backoff, inactivity monitoring and the watchdog verdict. All methods run
on the event loop; the sync ones never suspend, so state transitions are
atomic with respect to other callbacks.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass

from channels import Channel, TransportFault

log = logging.getLogger(__name__)


class SessionState(enum.StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    LOGGED_OUT = "logged_out"


@dataclass
class Session:
    state: SessionState = SessionState.DISCONNECTED
    reconnect_attempts: int = 0
    last_connected_at: float = 0.0
    last_activity_at: float = 0.0
    reconnect_locked: bool = False
    ever_open: bool = False


# ─── Backoff ─────────────────────────────────────────────────────

class ExponentialBackoff:
    """min(initial * 2^attempts, maximum) plus up to 50% random jitter."""

    def __init__(self, initial: float = 5.0, maximum: float = 60.0):
        self.initial = initial
        self.maximum = maximum

    def base(self, attempts: int) -> float:
        return min(self.initial * (2 ** attempts), self.maximum)

    def delay(self, attempts: int) -> float:
        base = self.base(attempts)
        return base + random.uniform(0, base / 2)  # noqa: S311 — timing jitter, not cryptographic


class FixedBackoff:
    def __init__(self, seconds: float = 5.0):
        self.seconds = seconds

    def delay(self, attempts: int) -> float:
        return self.seconds


# ─── Supervisor ──────────────────────────────────────────────────

class ConnectionSupervisor:
    def __init__(
        self,
        channel: Channel,
        backoff: ExponentialBackoff | FixedBackoff,
        *,
        dead_check_limit: int = 5,
        watchdog: bool = False,
        watchdog_grace: float = 180.0,
        never_open_limit: float = 300.0,
        inactivity_limit: float = 900.0,
        on_fatal: Callable[[BaseException], None] | None = None,
        clock: Callable[[], float] = time.time,
        boot_time: float | None = None,
    ):
        self.channel = channel
        self.name = channel.name
        self.backoff = backoff
        self.dead_check_limit = dead_check_limit
        self.watchdog = watchdog
        self.watchdog_grace = watchdog_grace
        self.never_open_limit = never_open_limit
        self.inactivity_limit = inactivity_limit
        self.on_fatal = on_fatal
        self.clock = clock
        self.boot_time = boot_time if boot_time is not None else clock()

        self.session = Session()
        self.dead_checks = 0
        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._connect_task: asyncio.Task | None = None
        self._stopped = False

        channel.listener = self

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    # ─── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        """First connection attempt. Failures schedule a reconnect, never raise."""
        self._stopped = False
        await self._establish()

    async def stop(self) -> None:
        self._stopped = True
        self._cancel_timer()
        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        await self.channel.disconnect()
        self.session.state = SessionState.DISCONNECTED
        log.info("[%s] supervisor stopped", self.name)

    async def _establish(self) -> None:
        if self._stopped:
            return
        self.session.state = SessionState.CONNECTING
        log.info("[%s] connecting (attempt #%d)", self.name, self.session.reconnect_attempts)
        try:
            await self.channel.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("[%s] connection failed: %s", self.name, e)
            self.on_close(None, f"connect_failed: {e}")
            return

        task = self.channel.reader_task
        if task is not None:
            task.add_done_callback(self._reader_done)

    def _on_timer(self) -> None:
        self._reconnect_timer = None
        self._connect_task = asyncio.get_running_loop().create_task(
            self._establish(), name=f"{self.name}-connect",
        )

    def _cancel_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def reconnect(self, reason: str = "unknown", force: bool = False) -> None:
        """Single entry point for every reconnection request."""
        if self._stopped:
            return
        if self.session.reconnect_locked and not force:
            log.info("[%s] reconnect already in progress (reason: %s), skipping", self.name, reason)
            return
        self.session.reconnect_locked = True
        self._cancel_timer()
        self.channel.abort()

        delay = self.backoff.delay(self.session.reconnect_attempts)
        self.session.reconnect_attempts += 1
        self.session.state = SessionState.RECONNECTING
        log.info("[%s] reconnecting in %.1fs (attempt #%d, reason: %s)",
                 self.name, delay, self.session.reconnect_attempts, reason)
        self._reconnect_timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    # ─── Listener callbacks (from the channel) ───────────────────

    def on_open(self) -> None:
        now = self.clock()
        self.session.state = SessionState.OPEN
        self.session.reconnect_attempts = 0
        self.session.last_connected_at = now
        self.session.last_activity_at = now
        self.session.reconnect_locked = False
        self.session.ever_open = True
        self.dead_checks = 0
        log.info("[%s] connected", self.name)

    def on_close(self, code: int | None = None, reason: str = "") -> None:
        if self._stopped or self.session.state == SessionState.LOGGED_OUT:
            return
        if self._reconnect_timer is not None:
            log.debug("[%s] close (%s) ignored, reconnect already scheduled", self.name, reason)
            return
        log.warning("[%s] connection closed (code: %s, %s)", self.name, code, reason or "no reason")
        self.session.reconnect_locked = False
        self.reconnect(reason or f"close_code_{code}")

    def on_logged_out(self) -> None:
        self._cancel_timer()
        self.session.state = SessionState.LOGGED_OUT
        self.session.reconnect_locked = False
        self.channel.abort()
        log.error("[%s] logged out; manual re-authentication required", self.name)

    def on_activity(self) -> None:
        self.session.last_activity_at = self.clock()

    def _reader_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.handle_fault(exc)

    def handle_fault(self, exc: BaseException) -> None:
        """Transport faults force a reconnect; anything else is fatal."""
        if isinstance(exc, TransportFault):
            log.warning("[%s] transport fault: %s. Forcing reconnect.", self.name, exc)
            self.reconnect("transport_fault", force=True)
            return
        log.critical("[%s] unrecoverable fault: %r", self.name, exc)
        if self.on_fatal is not None:
            self.on_fatal(exc)

    # ─── Monitoring ──────────────────────────────────────────────

    def health_check(self) -> None:
        """Periodic inactivity check (health monitor tick)."""
        state = self.session.state
        if state == SessionState.OPEN:
            self.dead_checks = 0
            log.info("[%s] OK. Last connected: %s. Last activity: %s", self.name,
                     _iso(self.session.last_connected_at), _iso(self.session.last_activity_at))
            return
        if state == SessionState.RECONNECTING:
            log.info("[%s] reconnecting (attempt #%d). Standing by.",
                     self.name, self.session.reconnect_attempts)
            return
        if state == SessionState.LOGGED_OUT:
            log.error("[%s] logged out. Waiting for manual re-authentication.", self.name)
            return

        self.dead_checks += 1
        log.warning("[%s] inactive (check #%d). Last activity: %s",
                    self.name, self.dead_checks, _iso(self.session.last_activity_at))
        if self.dead_checks >= self.dead_check_limit:
            log.error("[%s] inactive for %d checks. Forcing reconnect.", self.name, self.dead_checks)
            self.dead_checks = 0
            self.reconnect("inactive")

    def watchdog_expired(self) -> str:
        """Return a reason if the process should be restarted, else ""."""
        if not self.watchdog:
            return ""
        now = self.clock()
        uptime = now - self.boot_time
        if uptime < self.watchdog_grace:
            return ""
        if not self.session.ever_open:
            if uptime > self.never_open_limit:
                return f"{self.name} never connected after {uptime:.0f}s uptime"
            return ""
        inactive = now - self.session.last_activity_at
        if inactive > self.inactivity_limit:
            return f"{self.name} inactive for {inactive / 60:.0f} minutes"
        return ""

    def snapshot(self) -> dict:
        return {
            "state": str(self.session.state),
            "reconnect_attempts": self.session.reconnect_attempts,
            "last_connected": _iso(self.session.last_connected_at),
            "last_activity": _iso(self.session.last_activity_at),
            **self.channel.health_snapshot(),
        }


def _iso(ts: float) -> str:
    if not ts:
        return "never"
    return time.strftime("%Y-%m-%dT%H:%M:%S%z", time.localtime(ts))
