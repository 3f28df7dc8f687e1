"""Async queues between the mesh monitors and a reply agent."""

import asyncio
from collections import Counter
from typing import Awaitable, Callable

from loguru import logger

from meshbridge.bus.events import OutboundReply
from meshbridge.core.models import InboundContext

ReplySubscriber = Callable[[OutboundReply], Awaitable[None]]

# Poll interval that lets ``dispatch_outbound`` notice ``stop()``.
_DISPATCH_POLL_SECONDS = 1.0


class MessageBus:
    """
    Decouples account monitors from the agent that writes replies.

    Monitors publish admitted contexts on the inbound queue. The agent consumes
    them and publishes ``OutboundReply`` records, which ``dispatch_outbound``
    hands to the subscribers registered for the reply's channel. Bounded queues
    drop their oldest entry on overflow.
    """

    def __init__(self, *, inbound_maxsize: int = 0, outbound_maxsize: int = 0):
        self.inbound: asyncio.Queue[InboundContext] = asyncio.Queue(
            maxsize=max(0, inbound_maxsize)
        )
        self.outbound: asyncio.Queue[OutboundReply] = asyncio.Queue(
            maxsize=max(0, outbound_maxsize)
        )
        self._subscribers: dict[str, list[ReplySubscriber]] = {}
        self._dropped: Counter[str] = Counter()
        self._dispatching = False

    async def _enqueue(self, name: str, queue: asyncio.Queue, item: object) -> None:
        if queue.maxsize > 0 and queue.full():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            else:
                self._dropped[name] += 1
                count = self._dropped[name]
                if count == 1 or count % 100 == 0:
                    logger.warning(
                        "MessageBus {} queue full, dropped oldest (total={})", name, count
                    )
        await queue.put(item)

    async def publish_inbound(self, ctx: InboundContext) -> None:
        await self._enqueue("inbound", self.inbound, ctx)

    async def consume_inbound(self) -> InboundContext:
        """Next admitted context; blocks until one arrives."""
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundReply) -> None:
        await self._enqueue("outbound", self.outbound, msg)

    async def consume_outbound(self) -> OutboundReply:
        """Next reply; blocks until one arrives."""
        return await self.outbound.get()

    def subscribe_outbound(self, channel: str, callback: ReplySubscriber) -> None:
        """Route replies addressed to ``channel`` to ``callback``."""
        self._subscribers.setdefault(channel, []).append(callback)

    async def dispatch_outbound(self) -> None:
        """Deliver replies to channel subscribers until ``stop()`` is called."""
        self._dispatching = True
        while self._dispatching:
            try:
                msg = await asyncio.wait_for(self.outbound.get(), _DISPATCH_POLL_SECONDS)
            except asyncio.TimeoutError:
                continue
            subscribers = self._subscribers.get(msg.channel)
            if not subscribers:
                logger.debug("No subscriber for {} reply on {}", msg.channel, msg.session_key)
                continue
            for callback in subscribers:
                try:
                    await callback(msg)
                except Exception as e:
                    logger.error("Reply delivery to {} failed: {}", msg.channel, e)

    def stop(self) -> None:
        self._dispatching = False

    @property
    def inbound_size(self) -> int:
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        return self.outbound.qsize()

    @property
    def inbound_dropped(self) -> int:
        """Contexts discarded because the inbound queue was full."""
        return self._dropped["inbound"]

    @property
    def outbound_dropped(self) -> int:
        """Replies discarded because the outbound queue was full."""
        return self._dropped["outbound"]
