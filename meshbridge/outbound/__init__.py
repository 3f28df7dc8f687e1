"""Outbound delivery: chunk pacing and ad hoc sends."""

from meshbridge.outbound.pacer import ChunkedDeliveryPacer, chunk_text, format_text_with_media
from meshbridge.outbound.send import (
    BrokerSendHandle,
    DeviceSendHandle,
    SendRegistry,
    active_sends,
    send_text,
)

__all__ = [
    "BrokerSendHandle",
    "ChunkedDeliveryPacer",
    "DeviceSendHandle",
    "SendRegistry",
    "active_sends",
    "chunk_text",
    "format_text_with_media",
    "send_text",
]
