"""Message bus module for decoupled transport-agent communication."""

from meshbridge.bus.events import OutboundReply
from meshbridge.bus.queue import MessageBus
from meshbridge.bus.reply import (
    BusReplyPipeline,
    EchoReplyPipeline,
    SilentReplyPipeline,
    serve_bus,
)

__all__ = [
    "BusReplyPipeline",
    "EchoReplyPipeline",
    "MessageBus",
    "OutboundReply",
    "SilentReplyPipeline",
    "serve_bus",
]
