import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from meshbridge.config.env import MeshtasticEnv
from meshbridge.config.loader import parse_config
from meshbridge.core.models import DispatchResult, InboundMessage, Ordering
from meshbridge.device.client import DeviceTimings
from meshbridge.device.driver import LinkStatus

FAST_TIMINGS = DeviceTimings(
    configure_timeout=0.2,
    config_retry_delay=0.01,
    liveness_poll=0.01,
    ack_timeout=0.2,
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for key in (
        "MESHTASTIC_TRANSPORT",
        "MESHTASTIC_SERIAL_PORT",
        "MESHTASTIC_TCP_ADDRESS",
        "MESHTASTIC_HTTP_ADDRESS",
        "MESHTASTIC_MQTT_BROKER",
        "MESHTASTIC_MQTT_TOPIC",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MESHBRIDGE_HOME", str(tmp_path / "home"))


def make_config(meshtastic: dict[str, Any] | None = None, **root: Any):
    raw: dict[str, Any] = dict(root)
    channels = dict(raw.pop("channels", {}))
    if meshtastic is not None:
        channels["meshtastic"] = meshtastic
    raw["channels"] = channels
    return parse_config(raw)


def empty_env() -> MeshtasticEnv:
    return MeshtasticEnv()


def make_message(
    text: str = "hello",
    *,
    sender_id: str = "!0000a1b2",
    sender_name: str | None = None,
    is_group: bool = False,
    channel_index: int = 0,
    channel_name: str | None = None,
    timestamp: int = 1_700_000_000_000,
) -> InboundMessage:
    return InboundMessage(
        message_id="m-1",
        sender_id=sender_id,
        sender_name=sender_name,
        channel_index=channel_index,
        channel_name=channel_name,
        text=text,
        received_at=0.0,
        timestamp=timestamp,
        is_group=is_group,
    )


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeDriver:
    """Scriptable device driver. Emits ``phases`` (after ``preamble``) on open."""

    def __init__(
        self,
        *,
        node_num: int | None = 0x0000ABCD,
        phases: tuple[str, ...] = ("connected", "configured"),
        preamble: tuple[Any, ...] = (),
        configured: bool = False,
        ack: tuple[bool, str | None] | None = (True, None),
        open_error: Exception | None = None,
    ):
        self.node_num = node_num
        self.phases = phases
        self.preamble = preamble
        self.configured = configured
        self.ack = ack
        self.open_error = open_error
        self.emit = None
        self.sent: list[dict[str, Any]] = []
        self.closed = 0
        self.config_requests = 0
        self.owner: tuple[str, str] | None = None

    @property
    def my_node_num(self) -> int | None:
        return self.node_num

    def open(self, emit) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.emit = emit
        for event in self.preamble:
            emit(event)
        for phase in self.phases:
            emit(LinkStatus(phase))

    def request_config(self) -> None:
        self.config_requests += 1

    def is_configured(self) -> bool:
        return self.configured

    def send_text(self, text, *, destination, channel_index, want_ack, on_ack=None):
        self.sent.append(
            {
                "text": text,
                "destination": destination,
                "channel_index": channel_index,
                "want_ack": want_ack,
            }
        )
        if on_ack is not None and self.ack is not None:
            on_ack(*self.ack)
        return len(self.sent)

    def set_owner(self, long_name: str, short_name: str) -> None:
        self.owner = (long_name, short_name)

    def close(self) -> None:
        self.closed += 1


class FakeMqttClient:
    """Stand-in for ``paho.mqtt.client.Client``; callbacks are fired by the test."""

    def __init__(self) -> None:
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.credentials: tuple[str, str] | None = None
        self.tls = False
        self.reconnect: tuple[int, int] | None = None
        self.target: tuple[str, int] | None = None
        self.loop_running = False
        self.subscribed: list[str] = []
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.disconnects = 0

    def username_pw_set(self, username: str, password: str) -> None:
        self.credentials = (username, password)

    def tls_set(self) -> None:
        self.tls = True

    def reconnect_delay_set(self, min_delay: int, max_delay: int) -> None:
        self.reconnect = (min_delay, max_delay)

    def connect_async(self, host: str, port: int) -> None:
        self.target = (host, port)

    def loop_start(self) -> None:
        self.loop_running = True

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        self.disconnects += 1

    def subscribe(self, topic: str) -> None:
        self.subscribed.append(topic)

    def publish(self, topic: str, payload: str):
        self.published.append((topic, json.loads(payload)))
        return SimpleNamespace(rc=0, mid=len(self.published))

    # Test helpers

    def fire_connect(self) -> None:
        self.on_connect(self, None, None, SimpleNamespace(is_failure=False), None)

    def fire_message(self, message: dict[str, Any]) -> None:
        self.on_message(self, None, SimpleNamespace(payload=json.dumps(message).encode()))


class RecordingHandle:
    """Send handle that records every chunk."""

    def __init__(self, transport: str = "serial", result: DispatchResult | None = None):
        self.transport = transport
        self.result = result or DispatchResult(ok=True, acked=True)
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        text: str,
        *,
        target: str,
        channel_index: int | None = None,
        channel_name: str | None = None,
        ordering: Ordering = Ordering.FIRE_AND_FORGET,
    ) -> DispatchResult:
        self.sent.append(
            {
                "text": text,
                "target": target,
                "channel_index": channel_index,
                "channel_name": channel_name,
                "ordering": ordering,
            }
        )
        return self.result


class RecordingSleep:
    """Injectable sleep that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class CollectingPipeline:
    """Reply pipeline that records contexts and replies with fixed payloads."""

    def __init__(self, replies: list[Any] | None = None):
        self.contexts: list[Any] = []
        self.replies = replies or []

    async def dispatch(self, ctx, deliver) -> None:
        self.contexts.append(ctx)
        for payload in self.replies:
            await deliver(payload)
