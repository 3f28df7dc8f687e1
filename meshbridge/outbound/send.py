"""Ad hoc sends through the live connection of a running account."""

from __future__ import annotations

import uuid
import weakref
from typing import TYPE_CHECKING

from loguru import logger

from meshbridge.accounts.resolver import resolve_account
from meshbridge.config.defaults import CHANNEL_ID
from meshbridge.config.env import MeshtasticEnv
from meshbridge.config.schema import Config
from meshbridge.core.errors import (
    EmptyMessageError,
    InvalidTargetError,
    NoActiveConnectionError,
    NotConfiguredError,
)
from meshbridge.core.models import DispatchResult, Ordering, SendResult
from meshbridge.core.ports import ActivityRecorder, SendHandle
from meshbridge.policy.identity import hex_to_node_num, normalize_messaging_target

if TYPE_CHECKING:
    from meshbridge.broker.client import BrokerConnection
    from meshbridge.device.client import DeviceConnection


class SendRegistry:
    """Live send handles keyed by account id.

    Handles are held weakly so a dropped connection never lingers here.
    """

    def __init__(self) -> None:
        self._handles: weakref.WeakValueDictionary[str, SendHandle] = (
            weakref.WeakValueDictionary()
        )

    def install(self, account_id: str, handle: SendHandle) -> None:
        self._handles[account_id] = handle

    def clear(self, account_id: str, handle: SendHandle | None = None) -> None:
        """Remove the handle; with ``handle`` given, only when it is still the installed one."""
        current = self._handles.get(account_id)
        if current is None:
            return
        if handle is None or current is handle:
            del self._handles[account_id]

    def get(self, account_id: str) -> SendHandle | None:
        return self._handles.get(account_id)

    def require(self, account_id: str, transport: str) -> SendHandle:
        handle = self._handles.get(account_id)
        if handle is None:
            raise NoActiveConnectionError(account_id, transport)
        return handle


active_sends = SendRegistry()


class DeviceSendHandle:
    """Send handle over a serial or TCP device session."""

    def __init__(self, connection: "DeviceConnection", transport: str):
        self.connection = connection
        self.transport = transport

    async def send(
        self,
        text: str,
        *,
        target: str,
        channel_index: int | None = None,
        channel_name: str | None = None,
        ordering: Ordering = Ordering.FIRE_AND_FORGET,
    ) -> DispatchResult:
        if target.startswith("!"):
            return await self.connection.send_text(
                text,
                destination=hex_to_node_num(target),
                channel_index=channel_index or 0,
                ordering=ordering,
            )
        if channel_index is None:
            channel_index = self.connection.find_channel_index(channel_name or target)
        if channel_index is None:
            raise InvalidTargetError(f"Unknown Meshtastic channel: {channel_name or target}")
        return await self.connection.send_text(text, channel_index=channel_index)


class BrokerSendHandle:
    """Send handle over the MQTT relay."""

    transport = "mqtt"

    def __init__(self, connection: "BrokerConnection"):
        self.connection = connection

    async def send(
        self,
        text: str,
        *,
        target: str,
        channel_index: int | None = None,
        channel_name: str | None = None,
        ordering: Ordering = Ordering.FIRE_AND_FORGET,
    ) -> DispatchResult:
        if target.startswith("!"):
            return await self.connection.send_text(
                text, destination=target, channel_name=channel_name
            )
        return await self.connection.send_text(text, channel_name=channel_name or target)


async def send_text(
    config: Config,
    target: str,
    text: str,
    *,
    account_id: str | None = None,
    channel_index: int | None = None,
    channel_name: str | None = None,
    registry: SendRegistry | None = None,
    activity: ActivityRecorder | None = None,
    env: MeshtasticEnv | None = None,
) -> SendResult:
    """Send one message through the account's running connection.

    Direct messages wait (bounded) for the radio acknowledgment; a missing ack
    is logged, never raised.
    """
    account = resolve_account(config, account_id, env=env)
    if not account.configured:
        raise NotConfiguredError(account.account_id)

    normalized = normalize_messaging_target(target)
    if not normalized:
        raise InvalidTargetError(f"Invalid Meshtastic target: {target}")

    prepared = text.strip()
    if not prepared:
        raise EmptyMessageError("Message must be non-empty for Meshtastic sends")

    handle = (registry or active_sends).require(account.account_id, account.transport)
    result = await handle.send(
        prepared,
        target=normalized,
        channel_index=channel_index,
        channel_name=channel_name,
        ordering=Ordering.AWAIT_ACK,
    )
    if not result.ok:
        logger.warning("[{}] send to {} failed: {}", account.account_id, normalized, result.error)
    elif result.acked is False:
        logger.info("[{}] send to {} was not acknowledged", account.account_id, normalized)

    if activity is not None:
        activity.record(CHANNEL_ID, account.account_id, "outbound")
    return SendResult(message_id=str(uuid.uuid4()), target=normalized)
