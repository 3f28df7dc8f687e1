"""Port interfaces for host collaborators."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from meshbridge.core.models import DispatchResult, Direction, InboundContext, Ordering, ReplyPayload

DeliverFn = Callable[[ReplyPayload], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class PairingRequestResult:
    """Outcome of registering a pairing request."""

    code: str
    created: bool


class ReplyPipeline(Protocol):
    """Turns an admitted message into zero or more replies."""

    async def dispatch(self, ctx: InboundContext, deliver: DeliverFn) -> None:
        """Produce replies for ``ctx`` and hand each one to ``deliver``."""


class PairingStore(Protocol):
    """Pairing approvals and pending first-contact requests."""

    async def read_allow_from(self, channel: str) -> list[str]:
        """Return ids approved through pairing."""

    async def upsert_pairing_request(
        self, channel: str, sender_id: str, meta: dict[str, Any] | None = None
    ) -> PairingRequestResult:
        """Register (or refresh) a pending request; idempotent per sender."""


@runtime_checkable
class ActivityRecorder(Protocol):
    """Fire-and-forget activity sink."""

    def record(
        self,
        channel: str,
        account_id: str,
        direction: Direction,
        at: int | None = None,
    ) -> None:
        """Record one inbound or outbound activity event (epoch ms)."""


class SendHandle(Protocol):
    """Live send entry point for one running account."""

    transport: str

    async def send(
        self,
        text: str,
        *,
        target: str,
        channel_index: int | None = None,
        channel_name: str | None = None,
        ordering: Ordering = Ordering.FIRE_AND_FORGET,
    ) -> DispatchResult:
        """Send one chunk. ``target`` is a ``!hex`` node id or a channel name."""
