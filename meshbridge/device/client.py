"""Device connection manager.

One ``DeviceConnection`` owns one driver session. Driver callbacks are
marshalled onto the event loop into a per-connection queue and processed
sequentially; lifecycle decisions go through the pure state machine in
``meshbridge.device.state``.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from meshbridge.config.defaults import (
    DEVICE_ACK_TIMEOUT_SECONDS,
    DEVICE_CONFIG_RETRY_DELAY_SECONDS,
    DEVICE_CONFIGURE_TIMEOUT_SECONDS,
    DEVICE_LIVENESS_POLL_SECONDS,
    PRIMARY_CHANNEL_NAME,
)
from meshbridge.core.errors import DeviceConnectError, DeviceConnectTimeout
from meshbridge.core.models import DispatchResult, Ordering
from meshbridge.device.driver import (
    ChannelInfo,
    DeviceDriver,
    DriverEvent,
    LinkStatus,
    NodeInfo,
    TextPacket,
    TransportFault,
)
from meshbridge.device.state import (
    HANDSHAKE_STATES,
    ConnectionState,
    Effect,
    Machine,
    MachineEvent,
    transition,
)

TextHandler = Callable[[TextPacket], Awaitable[None]]

_LINK_EVENTS = {
    "connected": MachineEvent.LINK_CONNECTED,
    "configured": MachineEvent.CONFIGURED,
    "disconnected": MachineEvent.LINK_DISCONNECTED,
}


@dataclass(frozen=True, slots=True)
class DeviceTimings:
    """Handshake and ack timings. Overridable for tests."""

    configure_timeout: float = DEVICE_CONFIGURE_TIMEOUT_SECONDS
    config_retry_delay: float = DEVICE_CONFIG_RETRY_DELAY_SECONDS
    liveness_poll: float = DEVICE_LIVENESS_POLL_SECONDS
    ack_timeout: float = DEVICE_ACK_TIMEOUT_SECONDS


class DeviceConnection:
    """Lifecycle, caches and send path for one device session."""

    def __init__(
        self,
        driver: DeviceDriver,
        *,
        account_id: str = "default",
        node_name: str | None = None,
        timings: DeviceTimings | None = None,
        on_text: TextHandler | None = None,
    ):
        self.driver = driver
        self.account_id = account_id
        self.node_name = (node_name or "").strip() or None
        self.timings = timings or DeviceTimings()
        self.on_text = on_text
        self.disconnected = asyncio.Event()
        self._machine = Machine()
        self._queue: asyncio.Queue[DriverEvent | MachineEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Future[None] | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._timers: list[asyncio.TimerHandle] = []
        self._node_names: dict[int, str] = {}
        self._channel_names: dict[int, str] = {}

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def my_node_num(self) -> int | None:
        return self.driver.my_node_num

    def get_node_name(self, node_num: int) -> str | None:
        return self._node_names.get(node_num)

    def get_channel_name(self, index: int) -> str | None:
        name = self._channel_names.get(index)
        if name:
            return name
        return PRIMARY_CHANNEL_NAME if index == 0 else None

    def find_channel_index(self, name: str) -> int | None:
        """Reverse channel-name lookup (case-insensitive)."""
        wanted = name.strip().lower()
        for index, channel_name in self._channel_names.items():
            if channel_name.lower() == wanted:
                return index
        if wanted == PRIMARY_CHANNEL_NAME.lower() and 0 not in self._channel_names:
            return 0
        return None

    # Event intake -----------------------------------------------------------

    def _emit(self, event: DriverEvent) -> None:
        """Thread-safe entry for driver callbacks."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _post(self, event: MachineEvent) -> None:
        self._queue.put_nowait(event)

    async def _pump(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._dispatch(item)
            except Exception as e:
                # A failing handler must not stop the session.
                logger.exception("[{}] device event handling failed: {}", self.account_id, e)

    async def _dispatch(self, item: DriverEvent | MachineEvent) -> None:
        if isinstance(item, MachineEvent):
            self._apply(item)
        elif isinstance(item, LinkStatus):
            logger.debug("[{}] device link {}", self.account_id, item.phase)
            self._apply(_LINK_EVENTS[item.phase])
        elif isinstance(item, NodeInfo):
            self._node_names[item.num] = item.long_name
        elif isinstance(item, ChannelInfo):
            self._channel_names[item.index] = item.name
        elif isinstance(item, TransportFault):
            logger.warning("[{}] device transport fault: {}", self.account_id, item.error)
        elif isinstance(item, TextPacket):
            await self._handle_text(item)

    async def _handle_text(self, packet: TextPacket) -> None:
        if self.state is not ConnectionState.READY or self.on_text is None:
            logger.debug("[{}] dropping text received before ready", self.account_id)
            return
        if packet.from_num == self.my_node_num:
            return
        await self.on_text(packet)

    # State machine ----------------------------------------------------------

    def _apply(self, event: MachineEvent) -> None:
        before = self._machine.state
        self._machine, effects = transition(self._machine, event)
        if self._machine.state is not before:
            logger.debug(
                "[{}] device {} -> {} on {}",
                self.account_id,
                before.value,
                self._machine.state.value,
                event.value,
            )
        for effect in effects:
            self._run_effect(effect)

    def _run_effect(self, effect: Effect) -> None:
        if effect is Effect.SCHEDULE_CONFIG_RETRY:
            self._call_later(self.timings.config_retry_delay, MachineEvent.RETRY_DUE)
        elif effect is Effect.REQUEST_CONFIG:
            self._spawn(self._request_config())
        elif effect is Effect.MARK_READY:
            self._cancel_timers()
            self._resolve_ready(None)
            if self.node_name:
                self._spawn(self._set_owner(self.node_name))
        elif effect is Effect.FAIL_TIMEOUT:
            self._resolve_ready(
                DeviceConnectTimeout(
                    f"device configure timed out ({self.timings.configure_timeout:g} s)"
                )
            )
        elif effect is Effect.FAIL_DISCONNECTED:
            self._resolve_ready(DeviceConnectError("device disconnected during configure"))
        elif effect is Effect.CLOSE_TRANSPORT:
            self._close_driver()
        elif effect is Effect.NOTIFY_DISCONNECTED:
            logger.info("[{}] device disconnected", self.account_id)
            self.disconnected.set()

    def _resolve_ready(self, error: Exception | None) -> None:
        ready = self._ready
        if ready is None or ready.done():
            return
        if error is None:
            ready.set_result(None)
        else:
            ready.set_exception(error)

    def _call_later(self, delay: float, event: MachineEvent) -> None:
        if self._loop is None:
            return
        self._timers.append(self._loop.call_later(delay, self._post, event))

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _request_config(self) -> None:
        try:
            await asyncio.to_thread(self.driver.request_config)
        except Exception as e:
            logger.debug("[{}] config re-request failed: {}", self.account_id, e)

    async def _set_owner(self, long_name: str) -> None:
        try:
            await asyncio.to_thread(self.driver.set_owner, long_name, long_name[:4])
        except Exception as e:
            logger.warning("[{}] failed to set device owner name: {}", self.account_id, e)

    def _close_driver(self) -> None:
        try:
            self.driver.close()
        except Exception as e:
            logger.debug("[{}] device close error ignored: {}", self.account_id, e)

    async def _poll_configured(self) -> None:
        while True:
            await asyncio.sleep(self.timings.liveness_poll)
            if self.state not in HANDSHAKE_STATES:
                return
            try:
                configured = self.driver.is_configured()
            except Exception as e:
                logger.debug("[{}] liveness poll failed: {}", self.account_id, e)
                configured = False
            if configured:
                self._post(MachineEvent.POLL_CONFIGURED)

    # Lifecycle --------------------------------------------------------------

    async def open(self) -> None:
        """Open the transport and wait until the device is ready.

        Raises DeviceConnectTimeout when the device is not ready in time and
        DeviceConnectError when the link drops during the handshake. The
        transport is closed in both cases.
        """
        if self.state is not ConnectionState.IDLE:
            raise DeviceConnectError(f"connection already used (state={self.state.value})")
        self._loop = asyncio.get_running_loop()
        self._ready = self._loop.create_future()
        self._pump_task = asyncio.create_task(self._pump())
        self._apply(MachineEvent.OPEN)

        try:
            self.driver.open(self._emit)
        except Exception as e:
            self.close()
            raise DeviceConnectError(f"failed to open device: {e}") from e

        self._call_later(self.timings.configure_timeout, MachineEvent.TIMEOUT)
        poll_task = asyncio.create_task(self._poll_configured())
        try:
            await self._ready
        except BaseException:
            self.close()
            raise
        finally:
            poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poll_task

    async def send_text(
        self,
        text: str,
        *,
        destination: int | None = None,
        channel_index: int = 0,
        ordering: Ordering = Ordering.FIRE_AND_FORGET,
    ) -> DispatchResult:
        """Send one chunk. Failures come back in the result, never raised.

        Broadcasts never request an ack. Direct messages request one; with
        AWAIT_ACK the call waits for it (bounded), otherwise it is observed in
        the background.
        """
        if self.state is not ConnectionState.READY:
            return DispatchResult(ok=False, error=f"device not ready ({self.state.value})")

        loop = asyncio.get_running_loop()
        want_ack = destination is not None
        ack: asyncio.Future[tuple[bool, str | None]] | None = (
            loop.create_future() if want_ack else None
        )

        def on_ack(acked: bool, error: str | None) -> None:
            def resolve() -> None:
                if ack is not None and not ack.done():
                    ack.set_result((acked, error))

            if not loop.is_closed():
                loop.call_soon_threadsafe(resolve)

        try:
            packet_id = await asyncio.to_thread(
                self.driver.send_text,
                text,
                destination=destination,
                channel_index=channel_index,
                want_ack=want_ack,
                on_ack=on_ack if want_ack else None,
            )
        except Exception as e:
            logger.warning("[{}] send failed: {}", self.account_id, e)
            return DispatchResult(ok=False, error=str(e))

        if ack is None:
            return DispatchResult(ok=True, packet_id=packet_id)
        if ordering is Ordering.AWAIT_ACK:
            acked, error = await self._wait_ack(ack, packet_id)
            return DispatchResult(ok=True, packet_id=packet_id, acked=acked, error=error)

        self._spawn(self._observe_ack(ack, packet_id))
        return DispatchResult(ok=True, packet_id=packet_id)

    async def _wait_ack(
        self, ack: asyncio.Future[tuple[bool, str | None]], packet_id: int | None
    ) -> tuple[bool, str | None]:
        try:
            acked, error = await asyncio.wait_for(ack, self.timings.ack_timeout)
        except asyncio.TimeoutError:
            acked, error = False, "ack timeout"
        if not acked:
            logger.info("[{}] packet {} not acknowledged: {}", self.account_id, packet_id, error)
        return acked, error

    async def _observe_ack(
        self, ack: asyncio.Future[tuple[bool, str | None]], packet_id: int | None
    ) -> None:
        await self._wait_ack(ack, packet_id)

    def close(self) -> None:
        """Close the transport and stop processing. Idempotent."""
        self._cancel_timers()
        self._apply(MachineEvent.CLOSE)
        self._resolve_ready(DeviceConnectError("connection closed"))
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None
        for task in list(self._background):
            task.cancel()
        self.disconnected.set()


async def connect_device(
    driver: DeviceDriver,
    *,
    account_id: str = "default",
    node_name: str | None = None,
    timings: DeviceTimings | None = None,
    on_text: TextHandler | None = None,
) -> DeviceConnection:
    """Open a device connection and return it once ready."""
    connection = DeviceConnection(
        driver,
        account_id=account_id,
        node_name=node_name,
        timings=timings,
        on_text=on_text,
    )
    await connection.open()
    return connection
