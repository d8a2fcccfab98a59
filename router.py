"""Router — canonical routing between transports and the command processor.

Consumes the intake queue serially: normalize the inbound message,
run it through the command processor, send the result back out through
the transport it came from.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from channels import Channel, InboundMessage
from channels.rpc import GROUP_PREFIX
from commands import CommandProcessor, RestartAction

log = logging.getLogger(__name__)

COMPOSITE_SEPARATOR = "::"


@dataclass
class Route:
    platform: str
    chat_id: str         # memory key; shared by everyone in a group
    reply_target: str
    sender_id: str       # identity used for admin checks
    text: str
    group_id: str | None = None
    message_id: str = ""


def normalize(msg: InboundMessage) -> Route:
    """Derive reply target, memory key and admin identity from a transport identity."""
    sender = msg.sender
    if COMPOSITE_SEPARATOR in sender:
        # "conversation::participant": reply to the conversation, authorize the participant
        target, _, participant = sender.partition(COMPOSITE_SEPARATOR)
        chat_id = reply_target = target
        sender_id = participant or target
    elif msg.group_id:
        chat_id = reply_target = f"{GROUP_PREFIX}{msg.group_id}"
        sender_id = sender
    else:
        chat_id = reply_target = sender_id = sender
    return Route(
        platform=msg.source,
        chat_id=chat_id,
        reply_target=reply_target,
        sender_id=sender_id,
        text=msg.text,
        group_id=msg.group_id,
        message_id=msg.message_id,
    )


class Router:
    def __init__(
        self,
        processor: CommandProcessor,
        channels: Mapping[str, Channel],
        terminate: Callable[[int, str], None],
        restart_notice: str = "Restarting services...",
        restart_delay: float = 3.0,
    ):
        self.processor = processor
        self.channels = channels
        self.terminate = terminate
        self.restart_notice = restart_notice
        self.restart_delay = restart_delay
        self.handled = 0

    async def handle(self, msg: InboundMessage) -> None:
        route = normalize(msg)
        result = await self.processor.process(
            route.chat_id, route.sender_id, route.text, platform=route.platform,
        )
        log.debug("Processor returned %s for %s", "a response" if result else "nothing",
                  route.chat_id)
        self.handled += 1
        await self.dispatch(route, result)

    async def dispatch(self, route: Route, result: str | RestartAction | None) -> None:
        if result is None:
            log.info("Ignoring message from %s: sleep mode or no action required", route.sender_id)
            return

        channel = self.channels.get(route.platform)
        if channel is None:
            log.error("No channel for platform %r, reply dropped", route.platform)
            return

        if isinstance(result, RestartAction):
            await channel.send(route.reply_target, self.restart_notice)
            # Let the notice flush before the process goes away
            await asyncio.sleep(self.restart_delay)
            self.terminate(1, f"restart requested by {route.sender_id}")
            return

        outcome = await channel.send(route.reply_target, result)
        if outcome.ok:
            log.info("Dispatched %s reply to %s", route.platform, route.reply_target)
        else:
            log.error("Failed to dispatch %s reply to %s: %s",
                      route.platform, route.reply_target, outcome.error)

    async def run(self, queue: asyncio.Queue) -> None:
        """Process the intake queue until a None sentinel or cancellation."""
        while True:
            msg = await queue.get()
            if msg is None:
                log.info("Router stopping")
                return
            try:
                await self.handle(msg)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Error handling message from %s", msg.source)
