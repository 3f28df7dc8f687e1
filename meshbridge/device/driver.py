"""Device drivers: the narrow surface the connection manager needs from a radio link.

``MeshtasticDriver`` wraps the ``meshtastic`` serial/TCP interfaces. Library
callbacks arrive on reader threads via pypubsub; the driver forwards them
through ``emit``, which must be thread-safe.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from loguru import logger

from meshbridge.config.defaults import DEFAULT_TCP_PORT, DEVICE_CONFIGURE_TIMEOUT_SECONDS

LinkPhase = Literal["connected", "configured", "disconnected"]


@dataclass(frozen=True, slots=True)
class LinkStatus:
    phase: LinkPhase


@dataclass(frozen=True, slots=True)
class TextPacket:
    from_num: int
    to_num: int | None
    channel_index: int
    text: str
    rx_time: int  # epoch milliseconds


@dataclass(frozen=True, slots=True)
class NodeInfo:
    num: int
    long_name: str


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    index: int
    name: str


@dataclass(frozen=True, slots=True)
class TransportFault:
    error: str


DriverEvent = LinkStatus | TextPacket | NodeInfo | ChannelInfo | TransportFault
EmitFn = Callable[[DriverEvent], None]
AckCallback = Callable[[bool, str | None], None]


class DeviceDriver(Protocol):
    """Transport operations used by ``DeviceConnection``.

    ``open`` must not block; status arrives later through ``emit``.
    """

    @property
    def my_node_num(self) -> int | None: ...

    def open(self, emit: EmitFn) -> None: ...

    def request_config(self) -> None: ...

    def is_configured(self) -> bool: ...

    def send_text(
        self,
        text: str,
        *,
        destination: int | None,
        channel_index: int,
        want_ack: bool,
        on_ack: AckCallback | None = None,
    ) -> int | None: ...

    def set_owner(self, long_name: str, short_name: str) -> None: ...

    def close(self) -> None: ...


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def parse_text_packet(packet: Any) -> TextPacket | None:
    """Extract a text event from a decoded meshtastic packet dict; None when unusable."""
    if not isinstance(packet, dict):
        return None
    decoded = packet.get("decoded")
    if not isinstance(decoded, dict):
        return None
    text = decoded.get("text")
    if text is None:
        payload = decoded.get("payload")
        if isinstance(payload, bytes):
            text = payload.decode("utf-8", errors="replace")
    if not isinstance(text, str) or not text:
        return None
    from_num = packet.get("from")
    if not isinstance(from_num, int) or from_num <= 0:
        return None
    to_num = packet.get("to")
    channel = packet.get("channel")
    rx_time = packet.get("rxTime")
    return TextPacket(
        from_num=from_num,
        to_num=to_num if isinstance(to_num, int) else None,
        channel_index=channel if isinstance(channel, int) else 0,
        text=text,
        rx_time=int(rx_time) * 1000 if isinstance(rx_time, int) and rx_time > 0 else _epoch_ms(),
    )


def _routing_ack(packet: Any) -> tuple[bool, str | None]:
    routing = {}
    if isinstance(packet, dict):
        routing = (packet.get("decoded") or {}).get("routing") or {}
    reason = routing.get("errorReason", "NONE") if isinstance(routing, dict) else "NONE"
    if reason in ("NONE", 0):
        return True, None
    return False, str(reason)


class MeshtasticDriver:
    """Serial or TCP link backed by the ``meshtastic`` Python library."""

    def __init__(
        self,
        transport: Literal["serial", "tcp"],
        address: str,
        *,
        configure_timeout: float = DEVICE_CONFIGURE_TIMEOUT_SECONDS,
    ):
        self.transport = transport
        self.address = address
        self._configure_timeout = configure_timeout
        self._iface: Any = None
        self._emit: EmitFn | None = None
        self._thread: threading.Thread | None = None
        self._closed = False

    @property
    def my_node_num(self) -> int | None:
        iface = self._iface
        if iface is None:
            return None
        info = getattr(iface, "myInfo", None)
        num = getattr(info, "my_node_num", None)
        if isinstance(num, int) and num > 0:
            return num
        local = getattr(iface, "localNode", None)
        num = getattr(local, "nodeNum", None)
        return num if isinstance(num, int) and num > 0 else None

    def _create_interface(self) -> Any:
        if self.transport == "serial":
            from meshtastic.serial_interface import SerialInterface

            return SerialInterface(
                devPath=self.address,
                connectNow=False,
                timeout=int(self._configure_timeout),
            )

        from meshtastic.tcp_interface import TCPInterface

        host, _, port = self.address.rpartition(":")
        if not host or not port.isdigit():
            host, port = self.address, str(DEFAULT_TCP_PORT)
        iface = TCPInterface(
            hostname=host,
            portNumber=int(port),
            connectNow=False,
            timeout=int(self._configure_timeout),
        )
        if getattr(iface, "socket", None) is None:
            iface.myConnect()
        return iface

    def open(self, emit: EmitFn) -> None:
        from pubsub import pub

        self._emit = emit
        pub.subscribe(self._on_text, "meshtastic.receive.text")
        pub.subscribe(self._on_established, "meshtastic.connection.established")
        pub.subscribe(self._on_lost, "meshtastic.connection.lost")
        pub.subscribe(self._on_node_updated, "meshtastic.node.updated")
        self._thread = threading.Thread(
            target=self._run_connect, name=f"meshtastic-{self.transport}", daemon=True
        )
        self._thread.start()

    def _run_connect(self) -> None:
        emit = self._emit
        if emit is None:
            return
        try:
            self._iface = self._create_interface()
            emit(LinkStatus("connected"))
            # Blocks until the config download completes or the library times out.
            self._iface.connect()
        except Exception as e:
            if self._closed:
                return
            logger.warning("Meshtastic {} link error on {}: {}", self.transport, self.address, e)
            emit(TransportFault(str(e)))
            emit(LinkStatus("disconnected"))

    def _is_ours(self, interface: Any) -> bool:
        return interface is not None and interface is self._iface

    def _on_text(self, packet: Any = None, interface: Any = None) -> None:
        if not self._is_ours(interface) or self._emit is None:
            return
        event = parse_text_packet(packet)
        if event is not None:
            self._emit(event)

    def _on_established(self, interface: Any = None) -> None:
        if not self._is_ours(interface) or self._emit is None:
            return
        self._emit_metadata()
        self._emit(LinkStatus("configured"))

    def _on_lost(self, interface: Any = None) -> None:
        if self._is_ours(interface) and self._emit is not None:
            self._emit(LinkStatus("disconnected"))

    def _on_node_updated(self, node: Any = None, interface: Any = None) -> None:
        if self._is_ours(interface) and self._emit is not None:
            info = self._node_info(node)
            if info is not None:
                self._emit(info)

    @staticmethod
    def _node_info(node: Any) -> NodeInfo | None:
        if not isinstance(node, dict):
            return None
        num = node.get("num")
        long_name = (node.get("user") or {}).get("longName")
        if isinstance(num, int) and long_name:
            return NodeInfo(num=num, long_name=str(long_name))
        return None

    def _emit_metadata(self) -> None:
        iface, emit = self._iface, self._emit
        if iface is None or emit is None:
            return
        for node in list((getattr(iface, "nodes", None) or {}).values()):
            info = self._node_info(node)
            if info is not None:
                emit(info)
        local = getattr(iface, "localNode", None)
        for channel in list(getattr(local, "channels", None) or []):
            name = getattr(getattr(channel, "settings", None), "name", "")
            index = getattr(channel, "index", None)
            if isinstance(index, int) and name:
                emit(ChannelInfo(index=index, name=name))

    def request_config(self) -> None:
        if self._iface is None:
            return
        self._iface._startConfig()

    def is_configured(self) -> bool:
        iface = self._iface
        if iface is None:
            return False
        connected = getattr(iface, "isConnected", None)
        return bool(connected is not None and connected.is_set())

    def send_text(
        self,
        text: str,
        *,
        destination: int | None,
        channel_index: int,
        want_ack: bool,
        on_ack: AckCallback | None = None,
    ) -> int | None:
        if self._iface is None:
            raise RuntimeError("meshtastic interface is not open")
        from meshtastic import BROADCAST_NUM
        from meshtastic.protobuf import portnums_pb2

        def on_response(packet: Any) -> None:
            if on_ack is not None:
                acked, error = _routing_ack(packet)
                on_ack(acked, error)

        sent = self._iface.sendData(
            text.encode("utf-8"),
            destinationId=destination if destination is not None else BROADCAST_NUM,
            portNum=portnums_pb2.PortNum.TEXT_MESSAGE_APP,
            wantAck=want_ack,
            onResponse=on_response if on_ack is not None else None,
            onResponseAckPermitted=on_ack is not None,
            channelIndex=channel_index,
        )
        packet_id = getattr(sent, "id", None)
        return packet_id if isinstance(packet_id, int) else None

    def set_owner(self, long_name: str, short_name: str) -> None:
        if self._iface is None:
            return
        self._iface.localNode.setOwner(long_name=long_name, short_name=short_name)

    def close(self) -> None:
        from pubsub import pub

        self._closed = True
        for listener, topic in (
            (self._on_text, "meshtastic.receive.text"),
            (self._on_established, "meshtastic.connection.established"),
            (self._on_lost, "meshtastic.connection.lost"),
            (self._on_node_updated, "meshtastic.node.updated"),
        ):
            try:
                pub.unsubscribe(listener, topic)
            except Exception as e:
                logger.debug("pubsub unsubscribe {} failed: {}", topic, e)
        iface, self._iface = self._iface, None
        if iface is not None:
            iface.close()
