"""Domain models shared by transports, policy and the reply path."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

ChatType = Literal["direct", "group"]
Direction = Literal["inbound", "outbound"]


@dataclass(frozen=True, slots=True, kw_only=True)
class InboundMessage:
    """Canonical inbound text event. Built once per physical or relayed event."""

    message_id: str
    sender_id: str
    sender_name: str | None
    channel_index: int
    channel_name: str | None
    text: str
    received_at: float  # time.monotonic()
    timestamp: int  # epoch milliseconds, for envelopes and activity
    is_group: bool

    @property
    def sender_display(self) -> str:
        if self.sender_name:
            return f"{self.sender_name} ({self.sender_id})"
        return self.sender_id

    @property
    def channel_label(self) -> str:
        return self.channel_name or f"channel-{self.channel_index}"


@dataclass(frozen=True, slots=True, kw_only=True)
class ReplyPayload:
    """One outbound reply produced by the reply pipeline."""

    text: str = ""
    media_urls: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True, kw_only=True)
class InboundContext:
    """Context record handed to the reply pipeline for an admitted message."""

    body: str
    raw_body: str
    command_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    chat_type: ChatType
    conversation_label: str
    sender_id: str
    sender_name: str | None = None
    group_subject: str | None = None
    group_system_prompt: str | None = None
    was_mentioned: bool | None = None
    command_authorized: bool = False
    message_id: str = ""
    timestamp: int = 0
    provider: str = "meshtastic"
    skill_filter: tuple[str, ...] | None = None
    tool_policy: dict[str, Any] | None = None


class Ordering(Enum):
    """How a send waits on the radio.

    FIRE_AND_FORGET dispatches the packet and observes the outcome in the
    background; AWAIT_ACK additionally waits (bounded) for the acknowledgment.
    Neither propagates delivery failure to the caller.
    """

    FIRE_AND_FORGET = "fire_and_forget"
    AWAIT_ACK = "await_ack"


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Outcome of one transport send. Logged and discarded, never raised."""

    ok: bool
    packet_id: int | None = None
    acked: bool | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SendResult:
    """Result of an ad hoc send."""

    message_id: str
    target: str
    channel: str = "meshtastic"


@dataclass(frozen=True, slots=True)
class Probe:
    """Configuration-validity probe. Does not check live link health."""

    ok: bool
    transport: str
    address: str | None = None
    error: str | None = None


@dataclass(slots=True)
class AccountStatus:
    """Runtime status snapshot for one account."""

    account_id: str
    running: bool = False
    last_inbound_at: int | None = None
    last_outbound_at: int | None = None
    last_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
