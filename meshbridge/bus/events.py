"""Event types carried on the message bus."""

from __future__ import annotations

from dataclasses import dataclass

from meshbridge.core.models import ReplyPayload


@dataclass(frozen=True, slots=True)
class OutboundReply:
    """One reply addressed back to the conversation that produced ``session_key``."""

    channel: str
    session_key: str
    payload: ReplyPayload
