"""Per-account monitor: owns one transport session and feeds inbound text to policy."""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from loguru import logger

from meshbridge.accounts.resolver import ResolvedAccount
from meshbridge.broker.client import BrokerConnection, BrokerSettings, BrokerTextEvent
from meshbridge.config.defaults import CHANNEL_ID, DEVICE_RELEASE_COOLDOWN_SECONDS
from meshbridge.config.schema import Config
from meshbridge.core.errors import NotConfiguredError
from meshbridge.core.models import AccountStatus, InboundMessage
from meshbridge.core.ports import ActivityRecorder, PairingStore, ReplyPipeline, SendHandle
from meshbridge.device.client import DeviceConnection, DeviceTimings
from meshbridge.device.driver import DeviceDriver, MeshtasticDriver, TextPacket
from meshbridge.inbound.handler import InboundHandler
from meshbridge.outbound.pacer import ChunkedDeliveryPacer
from meshbridge.outbound.send import BrokerSendHandle, DeviceSendHandle, SendRegistry, active_sends
from meshbridge.policy.identity import node_num_to_hex

DriverFactory = Callable[[ResolvedAccount], DeviceDriver]
BrokerClientFactory = Callable[[], Any]

BROKER_CONNECT_TIMEOUT_SECONDS = 15.0


def default_driver_factory(account: ResolvedAccount) -> DeviceDriver:
    if account.transport == "serial":
        return MeshtasticDriver("serial", account.serial_port)
    if account.tcp_tls:
        logger.warning(
            "Meshtastic [{}]: tcpTls is set but the device TCP API is plaintext", account.account_id
        )
    return MeshtasticDriver("tcp", account.tcp_address)


def describe_transport(account: ResolvedAccount) -> str:
    if account.transport == "serial":
        return f"serial ({account.serial_port})"
    if account.transport == "tcp":
        return f"tcp ({account.tcp_address})"
    return f"mqtt ({account.mqtt_broker or '?'})"


class AccountMonitor:
    """Runs one account until its device disconnects or ``abort`` is set.

    A device session is followed by a fixed cool-down so the OS can release
    the serial lock before the next connect. Only configuration and connect
    errors escape ``run``.
    """

    def __init__(
        self,
        account: ResolvedAccount,
        config: Config,
        *,
        pipeline: ReplyPipeline,
        pairing: PairingStore | None = None,
        activity: ActivityRecorder | None = None,
        registry: SendRegistry | None = None,
        status: AccountStatus | None = None,
        abort: asyncio.Event | None = None,
        driver_factory: DriverFactory | None = None,
        broker_client_factory: BrokerClientFactory | None = None,
        timings: DeviceTimings | None = None,
        cooldown_seconds: float = DEVICE_RELEASE_COOLDOWN_SECONDS,
        broker_connect_timeout: float = BROKER_CONNECT_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.account = account
        self.config = config
        self.pipeline = pipeline
        self.pairing = pairing
        self.activity = activity
        self.registry = registry or active_sends
        self.status = status or AccountStatus(account_id=account.account_id)
        self.abort = abort or asyncio.Event()
        self.driver_factory = driver_factory or default_driver_factory
        self.broker_client_factory = broker_client_factory
        self.timings = timings
        self.cooldown_seconds = cooldown_seconds
        self.broker_connect_timeout = broker_connect_timeout
        self._sleep = sleep or asyncio.sleep
        self._handler: InboundHandler | None = None

    @property
    def account_id(self) -> str:
        return self.account.account_id

    # Inbound ----------------------------------------------------------------

    def _make_handler(self, handle: SendHandle) -> InboundHandler:
        pacer = ChunkedDeliveryPacer(
            account_id=self.account_id,
            activity=self.activity,
            status=self.status,
            sleep=self._sleep,
        )
        return InboundHandler(
            account=self.account,
            config=self.config,
            pipeline=self.pipeline,
            handle=handle,
            pacer=pacer,
            pairing=self.pairing,
            status=self.status,
        )

    async def _accept(self, message: InboundMessage) -> None:
        if self.activity is not None:
            self.activity.record(CHANNEL_ID, self.account_id, "inbound", message.timestamp)
        if self._handler is not None:
            await self._handler.handle(message)

    def _device_text_handler(
        self, connection: DeviceConnection
    ) -> Callable[[TextPacket], Awaitable[None]]:
        async def on_text(packet: TextPacket) -> None:
            my_num = connection.my_node_num
            is_direct = packet.to_num is not None and my_num is not None and packet.to_num == my_num
            message = InboundMessage(
                message_id=str(uuid.uuid4()),
                sender_id=node_num_to_hex(packet.from_num),
                sender_name=connection.get_node_name(packet.from_num),
                channel_index=packet.channel_index,
                channel_name=connection.get_channel_name(packet.channel_index),
                text=packet.text,
                received_at=time.monotonic(),
                timestamp=packet.rx_time,
                is_group=not is_direct,
            )
            await self._accept(message)

        return on_text

    async def _on_broker_text(self, event: BrokerTextEvent) -> None:
        message = InboundMessage(
            message_id=str(uuid.uuid4()),
            sender_id=event.sender_id,
            sender_name=event.sender_name,
            channel_index=event.channel_index,
            channel_name=event.channel_name,
            text=event.text,
            received_at=time.monotonic(),
            timestamp=event.rx_time,
            is_group=not event.is_direct,
        )
        await self._accept(message)

    # Session plumbing -------------------------------------------------------

    async def _until_abort(self, aw: Awaitable[Any]) -> bool:
        """Await ``aw`` unless abort fires first. Returns False when aborted."""
        task = asyncio.ensure_future(aw)
        abort_wait = asyncio.ensure_future(self.abort.wait())
        try:
            done, _ = await asyncio.wait({task, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            abort_wait.cancel()
        if task in done:
            task.result()
            return True
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        return False

    def _start_session(self, handle: SendHandle) -> None:
        self.registry.install(self.account_id, handle)
        self.status.running = True
        self.status.last_error = None
        self._mark_connected(handle, True)

    def _stop_session(self, handle: SendHandle) -> None:
        self.registry.clear(self.account_id, handle)
        self.status.running = False
        self._mark_connected(handle, False)
        release = getattr(self.pipeline, "release_account", None)
        if callable(release):
            release(self.account_id)

    def _mark_connected(self, handle: SendHandle, connected: bool) -> None:
        method = getattr(self.activity, "set_connected", None)
        if callable(method):
            method(self.account_id, handle.transport, connected)

    async def _cooldown(self) -> None:
        if self.abort.is_set() or self.cooldown_seconds <= 0:
            return
        logger.debug(
            "[{}] waiting {:g}s for the device to be released",
            self.account_id,
            self.cooldown_seconds,
        )
        await self._until_abort(self._sleep(self.cooldown_seconds))

    def _device_connection(self) -> DeviceConnection:
        connection = DeviceConnection(
            self.driver_factory(self.account),
            account_id=self.account_id,
            node_name=self.account.config.node_name,
            timings=self.timings,
        )
        connection.on_text = self._device_text_handler(connection)
        return connection

    def _broker_connection(self) -> BrokerConnection:
        return BrokerConnection(
            BrokerSettings.from_config(self.account.config.mqtt),
            account_id=self.account_id,
            on_text=self._on_broker_text,
            client_factory=self.broker_client_factory,
        )

    # Lifecycle --------------------------------------------------------------

    async def run(self) -> None:
        """Run until disconnect or abort. Raises NotConfiguredError or a connect error."""
        if not self.account.configured:
            raise NotConfiguredError(self.account_id)
        logger.info(
            "[{}] starting Meshtastic provider ({})",
            self.account_id,
            describe_transport(self.account),
        )
        if self.account.transport == "mqtt":
            await self._run_broker()
        else:
            await self._run_device()

    async def _run_device(self) -> None:
        connection = self._device_connection()
        handle = DeviceSendHandle(connection, self.account.transport)
        self._handler = self._make_handler(handle)
        try:
            if not await self._until_abort(connection.open()):
                return
            self._start_session(handle)
            my_num = connection.my_node_num
            logger.info(
                "[{}] connected via {}, node {}",
                self.account_id,
                describe_transport(self.account),
                node_num_to_hex(my_num) if my_num is not None else "unknown",
            )
            await self._until_abort(connection.disconnected.wait())
            if not self.abort.is_set():
                logger.info("[{}] device disconnected, exiting monitor", self.account_id)
        except Exception as e:
            self.status.last_error = str(e)
            raise
        finally:
            self._stop_session(handle)
            self._handler = None
            connection.close()
            await self._cooldown()

    async def _run_broker(self) -> None:
        connection = self._broker_connection()
        handle = BrokerSendHandle(connection)
        self._handler = self._make_handler(handle)
        try:
            await connection.open()
            self._start_session(handle)
            logger.info(
                "[{}] connected via mqtt ({}:{})",
                self.account_id,
                connection.settings.broker,
                connection.settings.port,
            )
            # paho reconnects on its own; only abort or close ends the session.
            await self._until_abort(connection.disconnected.wait())
        finally:
            self._stop_session(handle)
            self._handler = None
            connection.close()

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[SendHandle]:
        """Open a transient connection with its send handle installed, for ad hoc sends."""
        if not self.account.configured:
            raise NotConfiguredError(self.account_id)
        if self.account.transport == "mqtt":
            broker = self._broker_connection()
            broker.on_text = None
            handle: SendHandle = BrokerSendHandle(broker)
            try:
                await broker.open()
                await broker.wait_connected(self.broker_connect_timeout)
                self._start_session(handle)
                yield handle
            finally:
                self._stop_session(handle)
                broker.close()
            return

        device = self._device_connection()
        device.on_text = None
        handle = DeviceSendHandle(device, self.account.transport)
        try:
            await device.open()
            self._start_session(handle)
            yield handle
        finally:
            self._stop_session(handle)
            device.close()
            await self._cooldown()
