"""Broker bridge: the mesh text contract over an MQTT relay.

Inbound JSON messages are parsed by the pure ``parse_broker_message``;
``BrokerConnection`` owns the paho client. Reconnects are left to paho's
fixed-interval retry; every successful connect re-subscribes.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from meshbridge.config.defaults import DEFAULT_MQTT
from meshbridge.config.schema import MqttConfig
from meshbridge.core.errors import BrokerConnectTimeout
from meshbridge.core.models import DispatchResult
from meshbridge.policy.identity import hex_to_node_num, node_num_to_hex, normalize_node_id

BROADCAST_NUM = 0xFFFFFFFF
_TEXT_TYPES = frozenset({"text", "sendtext"})
_LAST_SEGMENT = re.compile(r"/[^/]*$")


@dataclass(frozen=True, slots=True)
class BrokerTextEvent:
    sender_id: str
    text: str
    channel_index: int
    channel_name: str | None
    is_direct: bool
    rx_time: int  # epoch milliseconds
    sender_name: str | None = None


@dataclass(frozen=True, slots=True)
class BrokerSettings:
    """Broker connection settings with public-broker defaults applied."""

    broker: str
    port: int
    username: str
    password: str
    topic: str
    publish_topic: str
    tls: bool = False
    node_id: str | None = None

    @classmethod
    def from_config(cls, config: MqttConfig | None) -> "BrokerSettings":
        cfg = config or MqttConfig()
        topic = cfg.topic or DEFAULT_MQTT["topic"]
        node_id = normalize_node_id(cfg.node_id) if cfg.node_id else None
        return cls(
            broker=cfg.broker or DEFAULT_MQTT["broker"],
            port=cfg.port or DEFAULT_MQTT["port"],
            username=cfg.username if cfg.username is not None else DEFAULT_MQTT["username"],
            password=cfg.password if cfg.password is not None else DEFAULT_MQTT["password"],
            topic=topic,
            publish_topic=cfg.publish_topic or topic.replace("/#", "/mqtt"),
            tls=bool(cfg.tls),
            node_id=node_id or None,
        )


def publish_topic_for(settings: BrokerSettings, channel_name: str | None = None) -> str:
    """Publish topic; a channel name replaces the trailing path segment."""
    if channel_name:
        return _LAST_SEGMENT.sub(f"/{channel_name}", settings.publish_topic)
    return settings.publish_topic


def _as_node_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and 0 < value <= BROADCAST_NUM:
        return node_num_to_hex(value)
    if isinstance(value, str) and value.strip():
        node_id = normalize_node_id(value)
        return node_id if node_id.startswith("!") else None
    return None


def parse_broker_message(
    payload: bytes | str, my_node_id: str | None = None
) -> BrokerTextEvent | None:
    """Parse one relay JSON message. Anything that is not a usable text message yields None."""
    try:
        raw = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        msg = json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(msg, dict) or msg.get("type") not in _TEXT_TYPES:
        return None

    body = msg.get("payload")
    text = body.get("text") if isinstance(body, dict) else body
    if not isinstance(text, str) or not text:
        return None

    sender_id = _as_node_id(msg.get("sender")) or _as_node_id(msg.get("from"))
    if not sender_id:
        return None
    me = normalize_node_id(my_node_id) if my_node_id else None
    if me and sender_id == me:
        return None

    to_id = _as_node_id(msg.get("to"))
    # Without our own id there is no reliable signal; treat as broadcast.
    is_direct = bool(me and to_id and to_id == me)

    channel = msg.get("channel")
    channel_name = msg.get("channel_name")
    timestamp = msg.get("timestamp")
    return BrokerTextEvent(
        sender_id=sender_id,
        text=text,
        channel_index=channel if isinstance(channel, int) and not isinstance(channel, bool) else 0,
        channel_name=channel_name if isinstance(channel_name, str) and channel_name else None,
        is_direct=is_direct,
        rx_time=int(timestamp) * 1000
        if isinstance(timestamp, int) and timestamp > 0
        else int(time.time() * 1000),
    )


def build_publish_message(
    text: str, *, node_id: str | None, destination: str | None = None
) -> dict[str, Any]:
    """Outbound ``sendtext`` envelope."""
    message: dict[str, Any] = {"type": "sendtext", "payload": text}
    if node_id:
        message["sender"] = node_id
        message["from"] = hex_to_node_num(node_id)
    if destination:
        message["to"] = hex_to_node_num(destination)
    return message


BrokerTextHandler = Callable[[BrokerTextEvent], Awaitable[None]]
ClientFactory = Callable[[], Any]


def _default_client_factory() -> Any:
    import paho.mqtt.client as mqtt

    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        clean_session=True,
    )


class BrokerConnection:
    """One relay session for an account."""

    def __init__(
        self,
        settings: BrokerSettings,
        *,
        account_id: str = "default",
        on_text: BrokerTextHandler | None = None,
        client_factory: ClientFactory | None = None,
        reconnect_seconds: int = DEFAULT_MQTT["reconnect_seconds"],
    ):
        self.settings = settings
        self.account_id = account_id
        self.on_text = on_text
        self.connected = asyncio.Event()
        self.disconnected = asyncio.Event()
        self._client_factory = client_factory or _default_client_factory
        self._reconnect_seconds = reconnect_seconds
        self._client: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._pump_task: asyncio.Task[None] | None = None

    @property
    def my_node_id(self) -> str | None:
        return self.settings.node_id

    # paho callbacks (network thread) ---------------------------------------

    def _on_connect(
        self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if getattr(reason_code, "is_failure", False):
            logger.warning("[{}] mqtt connect refused: {}", self.account_id, reason_code)
            return
        logger.info(
            "[{}] mqtt connected to {}:{}, subscribing {}",
            self.account_id,
            self.settings.broker,
            self.settings.port,
            self.settings.topic,
        )
        client.subscribe(self.settings.topic)
        self._signal(self.connected.set)

    def _on_disconnect(
        self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        logger.info(
            "[{}] mqtt disconnected ({}); reconnecting in {}s",
            self.account_id,
            reason_code,
            self._reconnect_seconds,
        )
        self._signal(self.connected.clear)

    def _on_message(self, client: Any, userdata: Any, message: Any) -> None:
        payload = getattr(message, "payload", b"")
        self._signal(self._queue.put_nowait, payload)

    def _signal(self, fn: Callable[..., Any], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(fn, *args)

    # Lifecycle --------------------------------------------------------------

    async def open(self) -> None:
        """Start the client loop. Returns without waiting for the first connect."""
        self._loop = asyncio.get_running_loop()
        client = self._client_factory()
        client.username_pw_set(self.settings.username, self.settings.password)
        if self.settings.tls:
            client.tls_set()
        client.reconnect_delay_set(
            min_delay=self._reconnect_seconds, max_delay=self._reconnect_seconds
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        self._client = client
        self._pump_task = asyncio.create_task(self._pump())
        client.connect_async(self.settings.broker, self.settings.port)
        client.loop_start()

    async def wait_connected(self, timeout: float) -> None:
        """Wait for the first successful connect; raises BrokerConnectTimeout."""
        try:
            await asyncio.wait_for(self.connected.wait(), timeout)
        except asyncio.TimeoutError:
            raise BrokerConnectTimeout(
                f"mqtt broker {self.settings.broker}:{self.settings.port} did not accept "
                f"the connection within {timeout:g} s"
            ) from None

    async def _pump(self) -> None:
        while True:
            payload = await self._queue.get()
            event = parse_broker_message(payload, self.my_node_id)
            if event is None or self.on_text is None:
                continue
            try:
                await self.on_text(event)
            except Exception as e:
                logger.exception("[{}] mqtt inbound handling failed: {}", self.account_id, e)

    async def send_text(
        self,
        text: str,
        *,
        destination: str | None = None,
        channel_name: str | None = None,
    ) -> DispatchResult:
        """Publish one chunk. Failures come back in the result, never raised."""
        if self._client is None:
            return DispatchResult(ok=False, error="mqtt client is not open")
        topic = publish_topic_for(self.settings, channel_name)
        try:
            message = build_publish_message(text, node_id=self.my_node_id, destination=destination)
            info = self._client.publish(topic, json.dumps(message))
        except Exception as e:
            logger.warning("[{}] mqtt publish to {} failed: {}", self.account_id, topic, e)
            return DispatchResult(ok=False, error=str(e))
        rc = getattr(info, "rc", 0)
        mid = getattr(info, "mid", None)
        if rc:
            logger.warning("[{}] mqtt publish to {} returned rc={}", self.account_id, topic, rc)
            return DispatchResult(ok=False, packet_id=mid, error=f"rc={rc}")
        return DispatchResult(ok=True, packet_id=mid)

    def close(self) -> None:
        """Stop the client loop and disconnect. Idempotent."""
        client, self._client = self._client, None
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None
        if client is not None:
            try:
                client.disconnect()
                client.loop_stop()
            except Exception as e:
                logger.debug("[{}] mqtt close error ignored: {}", self.account_id, e)
        self.disconnected.set()


async def connect_broker(
    settings: BrokerSettings,
    *,
    account_id: str = "default",
    on_text: BrokerTextHandler | None = None,
    client_factory: ClientFactory | None = None,
) -> BrokerConnection:
    connection = BrokerConnection(
        settings, account_id=account_id, on_text=on_text, client_factory=client_factory
    )
    await connection.open()
    return connection
