import asyncio

import pytest
from conftest import (
    FAST_TIMINGS,
    CollectingPipeline,
    FakeDriver,
    FakeMqttClient,
    RecordingSleep,
    empty_env,
    make_config,
    wait_for,
)

from meshbridge.accounts.resolver import resolve_account
from meshbridge.bus import BusReplyPipeline, MessageBus
from meshbridge.channels.monitor import AccountMonitor, describe_transport
from meshbridge.config.defaults import DEVICE_RELEASE_COOLDOWN_SECONDS
from meshbridge.core.errors import BrokerConnectTimeout, DeviceConnectError, NotConfiguredError
from meshbridge.core.models import ReplyPayload
from meshbridge.device.driver import LinkStatus, TextPacket
from meshbridge.outbound.pacer import ChunkedDeliveryPacer
from meshbridge.outbound.send import SendRegistry
from meshbridge.telemetry.activity import InMemoryActivity

ME = "!0000abcd"


class AutoConnectClient(FakeMqttClient):
    def connect_async(self, host: str, port: int) -> None:
        super().connect_async(host, port)
        self.fire_connect()


def _monitor(section: dict, **kwargs) -> AccountMonitor:
    config = make_config(section)
    account = resolve_account(config, env=empty_env())
    kwargs.setdefault("pipeline", CollectingPipeline())
    kwargs.setdefault("registry", SendRegistry())
    kwargs.setdefault("sleep", RecordingSleep())
    kwargs.setdefault("timings", FAST_TIMINGS)
    return AccountMonitor(account, config, **kwargs)


def test_describe_transport() -> None:
    env = empty_env()
    serial = resolve_account(make_config({"serialPort": "/dev/ttyUSB0"}), env=env)
    tcp = resolve_account(
        make_config({"transport": "tcp", "tcpAddress": "10.0.0.5", "tcpTls": True}), env=env
    )
    mqtt = resolve_account(
        make_config({"transport": "mqtt", "mqtt": {"broker": "broker.local"}}), env=env
    )
    assert describe_transport(serial) == "serial (/dev/ttyUSB0)"
    assert describe_transport(tcp) == "tcp (10.0.0.5)"
    assert describe_transport(mqtt) == "mqtt (broker.local)"


def test_default_release_cooldown_and_pacing() -> None:
    monitor = AccountMonitor(
        resolve_account(make_config({"serialPort": "/dev/ttyUSB0"}), env=empty_env()),
        make_config({"serialPort": "/dev/ttyUSB0"}),
        pipeline=CollectingPipeline(),
    )
    assert monitor.cooldown_seconds == 3.0
    assert ChunkedDeliveryPacer(account_id="default").pacing_seconds == 1.5


async def test_unconfigured_account_is_rejected() -> None:
    monitor = _monitor({})
    with pytest.raises(NotConfiguredError):
        await monitor.run()
    with pytest.raises(NotConfiguredError):
        async with monitor.session():
            pass


async def test_device_run_replies_and_exits_on_disconnect() -> None:
    driver = FakeDriver()
    activity = InMemoryActivity()
    monitor = _monitor(
        {"serialPort": "/dev/ttyUSB0", "dmPolicy": "open"},
        pipeline=CollectingPipeline([ReplyPayload(text="pong")]),
        activity=activity,
        driver_factory=lambda account: driver,
    )
    task = asyncio.create_task(monitor.run())
    await wait_for(lambda: monitor.status.running)
    assert monitor.registry.get("default") is not None

    driver.emit(TextPacket(from_num=0x1234, to_num=0xABCD, channel_index=0, text="ping", rx_time=5))
    await wait_for(lambda: driver.sent)
    assert driver.sent[0]["text"] == "pong"
    assert driver.sent[0]["destination"] == 0x1234
    [ctx] = monitor.pipeline.contexts
    assert ctx.chat_type == "direct"
    assert ctx.sender_id == "!00001234"
    assert activity.count("default", "inbound") == 1
    assert activity.count("default", "outbound") == 1

    driver.emit(LinkStatus("disconnected"))
    await asyncio.wait_for(task, 1.0)
    assert not monitor.status.running
    assert monitor.registry.get("default") is None
    assert driver.closed >= 1
    assert monitor._sleep.delays == [DEVICE_RELEASE_COOLDOWN_SECONDS]


async def test_broadcast_text_is_a_group_message() -> None:
    driver = FakeDriver()
    monitor = _monitor(
        {
            "serialPort": "/dev/ttyUSB0",
            "groupPolicy": "open",
            "channels": {"*": {"requireMention": False}},
        },
        driver_factory=lambda account: driver,
    )
    task = asyncio.create_task(monitor.run())
    await wait_for(lambda: monitor.status.running)
    driver.emit(
        TextPacket(from_num=0x1234, to_num=0xFFFFFFFF, channel_index=0, text="hi all", rx_time=5)
    )
    await wait_for(lambda: monitor.pipeline.contexts)
    [ctx] = monitor.pipeline.contexts
    assert ctx.chat_type == "group"
    assert ctx.group_subject == "LongFast"
    assert ctx.session_key == "meshtastic:default:group:LongFast"
    monitor.abort.set()
    await asyncio.wait_for(task, 1.0)


async def test_abort_stops_device_run_without_cooldown() -> None:
    driver = FakeDriver()
    monitor = _monitor({"serialPort": "/dev/ttyUSB0"}, driver_factory=lambda account: driver)
    task = asyncio.create_task(monitor.run())
    await wait_for(lambda: monitor.status.running)
    monitor.abort.set()
    await asyncio.wait_for(task, 1.0)
    assert not monitor.status.running
    assert driver.closed >= 1
    assert monitor._sleep.delays == []


async def test_connect_failure_is_raised_after_cleanup() -> None:
    driver = FakeDriver(open_error=OSError("port busy"))
    monitor = _monitor({"serialPort": "/dev/ttyUSB0"}, driver_factory=lambda account: driver)
    with pytest.raises(DeviceConnectError):
        await monitor.run()
    assert "port busy" in (monitor.status.last_error or "")
    assert monitor.registry.get("default") is None
    assert monitor._sleep.delays == [DEVICE_RELEASE_COOLDOWN_SECONDS]


async def test_broker_run_replies_until_abort() -> None:
    client = FakeMqttClient()
    monitor = _monitor(
        {"transport": "mqtt", "dmPolicy": "open", "mqtt": {"broker": "broker.local", "nodeId": ME}},
        pipeline=CollectingPipeline([ReplyPayload(text="pong")]),
        broker_client_factory=lambda: client,
    )
    task = asyncio.create_task(monitor.run())
    await wait_for(lambda: monitor.status.running)
    assert monitor.registry.get("default").transport == "mqtt"

    client.fire_connect()
    client.fire_message({"type": "text", "payload": {"text": "ping"}, "from": 0x1234, "to": ME})
    await wait_for(lambda: client.published)
    topic, message = client.published[0]
    assert topic == "msh/US/2/json/mqtt"
    assert message == {
        "type": "sendtext",
        "payload": "pong",
        "sender": ME,
        "from": 0xABCD,
        "to": 0x1234,
    }

    monitor.abort.set()
    await asyncio.wait_for(task, 1.0)
    assert not monitor.status.running
    assert client.disconnects == 1
    assert monitor.registry.get("default") is None


async def test_device_session_installs_handle() -> None:
    driver = FakeDriver()
    monitor = _monitor({"serialPort": "/dev/ttyUSB0"}, driver_factory=lambda account: driver)
    async with monitor.session() as handle:
        assert monitor.registry.get("default") is handle
        result = await handle.send("hi", target="!00001234")
        assert result.ok
    assert monitor.registry.get("default") is None
    assert driver.sent[0]["destination"] == 0x1234
    assert driver.closed >= 1
    assert monitor._sleep.delays == [DEVICE_RELEASE_COOLDOWN_SECONDS]


async def test_broker_session_waits_for_connect() -> None:
    client = AutoConnectClient()
    monitor = _monitor(
        {"transport": "mqtt", "mqtt": {"broker": "broker.local", "nodeId": ME}},
        broker_client_factory=lambda: client,
    )
    async with monitor.session() as handle:
        await handle.send("hello", target="Ops")
    assert client.published == [
        (
            "msh/US/2/json/Ops",
            {"type": "sendtext", "payload": "hello", "sender": ME, "from": 0xABCD},
        )
    ]
    assert client.disconnects == 1


async def test_broker_session_times_out() -> None:
    client = FakeMqttClient()
    monitor = _monitor(
        {"transport": "mqtt", "mqtt": {"broker": "broker.local"}},
        broker_client_factory=lambda: client,
        broker_connect_timeout=0.05,
    )
    with pytest.raises(BrokerConnectTimeout):
        async with monitor.session():
            pass
    assert client.disconnects == 1
    assert monitor.registry.get("default") is None


async def test_disconnect_releases_reply_routes() -> None:
    driver = FakeDriver()
    pipeline = BusReplyPipeline(MessageBus())
    monitor = _monitor(
        {"serialPort": "/dev/ttyUSB0", "dmPolicy": "open"},
        pipeline=pipeline,
        driver_factory=lambda account: driver,
    )
    task = asyncio.create_task(monitor.run())
    await wait_for(lambda: monitor.status.running)
    driver.emit(TextPacket(from_num=0x1234, to_num=0xABCD, channel_index=0, text="ping", rx_time=5))
    await wait_for(lambda: pipeline._routes)
    assert list(pipeline._routes) == ["meshtastic:default:direct:!00001234"]

    driver.emit(LinkStatus("disconnected"))
    await asyncio.wait_for(task, 1.0)
    assert not pipeline._routes
