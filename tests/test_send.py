import gc

import pytest
from conftest import FAST_TIMINGS, FakeDriver, RecordingHandle, empty_env, make_config

from meshbridge.core.errors import (
    EmptyMessageError,
    InvalidTargetError,
    NoActiveConnectionError,
    NotConfiguredError,
)
from meshbridge.core.models import Ordering
from meshbridge.device.client import connect_device
from meshbridge.device.driver import ChannelInfo
from meshbridge.outbound.send import DeviceSendHandle, SendRegistry, send_text
from meshbridge.telemetry.activity import InMemoryActivity

CONFIG = make_config({"serialPort": "/dev/ttyUSB0"})


def test_registry_install_and_clear() -> None:
    registry = SendRegistry()
    first, second = RecordingHandle(), RecordingHandle()
    registry.install("default", first)
    registry.install("default", second)
    registry.clear("default", first)
    assert registry.get("default") is second
    registry.clear("default")
    assert registry.get("default") is None
    registry.clear("default")


def test_registry_holds_handles_weakly() -> None:
    registry = SendRegistry()
    registry.install("default", RecordingHandle())
    gc.collect()
    assert registry.get("default") is None


def test_registry_require_raises_without_connection() -> None:
    with pytest.raises(NoActiveConnectionError) as info:
        SendRegistry().require("relay", "tcp")
    assert "relay" in str(info.value)


async def test_send_text_uses_live_handle_and_awaits_ack() -> None:
    registry = SendRegistry()
    handle = RecordingHandle()
    registry.install("default", handle)
    activity = InMemoryActivity()

    result = await send_text(
        CONFIG,
        "meshtastic:!DEADBEEF",
        "  hello  ",
        registry=registry,
        activity=activity,
        env=empty_env(),
    )

    assert result.target == "!deadbeef"
    assert result.channel == "meshtastic"
    assert result.message_id
    assert handle.sent == [
        {
            "text": "hello",
            "target": "!deadbeef",
            "channel_index": None,
            "channel_name": None,
            "ordering": Ordering.AWAIT_ACK,
        }
    ]
    assert activity.count("default", "outbound") == 1


async def test_send_text_validation_order() -> None:
    registry = SendRegistry()
    env = empty_env()
    with pytest.raises(NotConfiguredError):
        await send_text(make_config(), "!deadbeef", "hi", registry=registry, env=env)
    with pytest.raises(InvalidTargetError):
        await send_text(CONFIG, "  ", "hi", registry=registry, env=env)
    with pytest.raises(EmptyMessageError):
        await send_text(CONFIG, "!deadbeef", "   ", registry=registry, env=env)
    with pytest.raises(NoActiveConnectionError):
        await send_text(CONFIG, "!deadbeef", "hi", registry=registry, env=env)


async def test_device_handle_routes_direct_and_channel_sends() -> None:
    driver = FakeDriver(preamble=(ChannelInfo(index=2, name="Ops"),))
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    handle = DeviceSendHandle(connection, "serial")

    await handle.send("dm", target="!00001234", ordering=Ordering.AWAIT_ACK)
    await handle.send("by name", target="ops")
    await handle.send("by index", target="whatever", channel_index=5)

    assert [(s["destination"], s["channel_index"]) for s in driver.sent] == [
        (0x1234, 0),
        (None, 2),
        (None, 5),
    ]
    with pytest.raises(InvalidTargetError):
        await handle.send("lost", target="Unknown")
    connection.close()
