"""Inbound message handling."""

from meshbridge.inbound.handler import InboundHandler, format_envelope, session_key_for

__all__ = ["InboundHandler", "format_envelope", "session_key_for"]
