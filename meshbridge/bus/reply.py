"""Bundled reply pipelines."""

from __future__ import annotations

from collections import OrderedDict

from loguru import logger

from meshbridge.bus.events import OutboundReply
from meshbridge.bus.queue import MessageBus
from meshbridge.config.defaults import CHANNEL_ID
from meshbridge.core.models import InboundContext, ReplyPayload
from meshbridge.core.ports import DeliverFn, ReplyPipeline

MAX_ROUTES = 1024


class BusReplyPipeline:
    """Hands admitted contexts to a ``MessageBus`` and routes replies back by session key.

    The latest ``deliver`` seen for a session wins. Routes of an account are
    dropped when its connection closes, and only the ``max_routes`` most
    recently active sessions are kept.
    """

    def __init__(
        self, bus: MessageBus, *, channel: str = CHANNEL_ID, max_routes: int = MAX_ROUTES
    ):
        self.bus = bus
        self.channel = channel
        self.max_routes = max(1, max_routes)
        self._routes: OrderedDict[str, tuple[str, DeliverFn]] = OrderedDict()
        bus.subscribe_outbound(channel, self._on_outbound)

    async def dispatch(self, ctx: InboundContext, deliver: DeliverFn) -> None:
        self._routes[ctx.session_key] = (ctx.account_id, deliver)
        self._routes.move_to_end(ctx.session_key)
        while len(self._routes) > self.max_routes:
            self._routes.popitem(last=False)
        await self.bus.publish_inbound(ctx)

    def release_account(self, account_id: str) -> None:
        """Forget every route that delivers through ``account_id``'s connection."""
        stale = [key for key, (owner, _) in self._routes.items() if owner == account_id]
        for key in stale:
            del self._routes[key]
        if stale:
            logger.debug("Released {} reply route(s) for {}", len(stale), account_id)

    async def _on_outbound(self, msg: OutboundReply) -> None:
        route = self._routes.get(msg.session_key)
        if route is None:
            logger.warning("No live route for reply to session {}", msg.session_key)
            return
        await route[1](msg.payload)


async def serve_bus(
    bus: MessageBus, responder: ReplyPipeline, *, channel: str = CHANNEL_ID
) -> None:
    """Consume inbound contexts and publish the responder's replies. Runs until cancelled."""
    while True:
        ctx = await bus.consume_inbound()

        async def deliver(payload: ReplyPayload, session_key: str = ctx.session_key) -> None:
            await bus.publish_outbound(OutboundReply(channel, session_key, payload))

        try:
            await responder.dispatch(ctx, deliver)
        except Exception as e:
            logger.error("Responder failed for session {}: {}", ctx.session_key, e)


class EchoReplyPipeline:
    """Replies with the received text. Useful for link testing."""

    def __init__(self, prefix: str = "echo: "):
        self.prefix = prefix

    async def dispatch(self, ctx: InboundContext, deliver: DeliverFn) -> None:
        text = ctx.command_body.strip()
        if text:
            await deliver(ReplyPayload(text=f"{self.prefix}{text}"))


class SilentReplyPipeline:
    """Logs admitted messages and never replies."""

    async def dispatch(self, ctx: InboundContext, deliver: DeliverFn) -> None:
        logger.info("{} from {}: {}", ctx.conversation_label, ctx.sender_id, ctx.raw_body)
