import asyncio
import dataclasses

import pytest
from conftest import FAST_TIMINGS, FakeDriver, wait_for

from meshbridge.core.errors import DeviceConnectError, DeviceConnectTimeout
from meshbridge.core.models import Ordering
from meshbridge.device.client import DeviceConnection, DeviceTimings, connect_device
from meshbridge.device.driver import (
    ChannelInfo,
    LinkStatus,
    NodeInfo,
    TextPacket,
    parse_text_packet,
)
from meshbridge.device.state import ConnectionState


async def test_open_reaches_ready() -> None:
    driver = FakeDriver()
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    assert connection.state is ConnectionState.READY
    assert connection.my_node_num == 0x0000ABCD
    connection.close()
    assert driver.closed == 1
    assert connection.disconnected.is_set()


async def test_connect_timeout_closes_transport() -> None:
    driver = FakeDriver(phases=("connected",))
    connection = DeviceConnection(driver, timings=FAST_TIMINGS)
    with pytest.raises(DeviceConnectTimeout):
        await connection.open()
    assert connection.state is ConnectionState.FAILED
    assert driver.closed == 1


async def test_config_is_requested_again_exactly_once() -> None:
    driver = FakeDriver(phases=("connected",))
    connection = DeviceConnection(driver, timings=FAST_TIMINGS)
    with pytest.raises(DeviceConnectTimeout):
        await connection.open()
    assert driver.config_requests == 1


async def test_liveness_poll_completes_handshake() -> None:
    driver = FakeDriver(phases=("connected",), configured=True)
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    assert connection.state is ConnectionState.READY
    connection.close()


async def test_disconnect_during_handshake_fails_connect() -> None:
    driver = FakeDriver(phases=("connected", "disconnected"))
    connection = DeviceConnection(driver, timings=FAST_TIMINGS)
    with pytest.raises(DeviceConnectError):
        await connection.open()
    assert driver.closed == 1


async def test_driver_open_error_is_wrapped() -> None:
    driver = FakeDriver(open_error=OSError("no such device"))
    connection = DeviceConnection(driver, timings=FAST_TIMINGS)
    with pytest.raises(DeviceConnectError, match="no such device"):
        await connection.open()


async def test_disconnect_after_ready_sets_event() -> None:
    driver = FakeDriver()
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    driver.emit(LinkStatus("disconnected"))
    await asyncio.wait_for(connection.disconnected.wait(), 1.0)
    assert connection.state is ConnectionState.DISCONNECTED
    connection.close()
    assert driver.closed == 1


async def test_connection_cannot_be_reopened() -> None:
    driver = FakeDriver()
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    connection.close()
    with pytest.raises(DeviceConnectError):
        await connection.open()


async def test_text_is_delivered_and_self_messages_dropped() -> None:
    received: list[TextPacket] = []

    async def on_text(packet: TextPacket) -> None:
        received.append(packet)

    driver = FakeDriver()
    connection = await connect_device(driver, timings=FAST_TIMINGS, on_text=on_text)
    own = TextPacket(from_num=0x0000ABCD, to_num=None, channel_index=0, text="me", rx_time=1)
    other = TextPacket(from_num=0x1234, to_num=None, channel_index=0, text="hi", rx_time=1)
    driver.emit(own)
    driver.emit(other)
    await wait_for(lambda: len(received) == 1)
    await asyncio.sleep(0.02)
    assert received == [other]
    connection.close()


async def test_text_before_ready_is_dropped() -> None:
    received: list[TextPacket] = []

    async def on_text(packet: TextPacket) -> None:
        received.append(packet)

    early = TextPacket(from_num=0x1234, to_num=None, channel_index=0, text="early", rx_time=1)
    driver = FakeDriver(phases=("connected", "configured"))
    driver.preamble = (early,)
    connection = await connect_device(driver, timings=FAST_TIMINGS, on_text=on_text)
    await asyncio.sleep(0.02)
    assert received == []
    connection.close()


async def test_node_and_channel_names_are_cached() -> None:
    driver = FakeDriver(
        preamble=(NodeInfo(num=0x1234, long_name="Hilltop"), ChannelInfo(index=1, name="Ops"))
    )
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    assert connection.get_node_name(0x1234) == "Hilltop"
    assert connection.get_channel_name(1) == "Ops"
    assert connection.get_channel_name(0) == "LongFast"
    assert connection.get_channel_name(5) is None
    assert connection.find_channel_index("ops") == 1
    assert connection.find_channel_index("longfast") == 0
    assert connection.find_channel_index("nope") is None
    connection.close()


async def test_node_name_is_applied_as_owner() -> None:
    driver = FakeDriver()
    connection = await connect_device(driver, node_name="Base Station", timings=FAST_TIMINGS)
    await wait_for(lambda: driver.owner is not None)
    assert driver.owner == ("Base Station", "Base")
    connection.close()


async def test_broadcast_send_never_requests_ack() -> None:
    driver = FakeDriver()
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    result = await connection.send_text("hello all", channel_index=2)
    assert result.ok
    assert result.acked is None
    assert driver.sent == [
        {"text": "hello all", "destination": None, "channel_index": 2, "want_ack": False}
    ]
    connection.close()


async def test_direct_send_awaits_ack() -> None:
    driver = FakeDriver()
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    result = await connection.send_text(
        "ping", destination=0x1234, ordering=Ordering.AWAIT_ACK
    )
    assert result.ok
    assert result.acked is True
    assert driver.sent[0]["want_ack"] is True
    connection.close()


async def test_missing_ack_is_reported_not_raised() -> None:
    driver = FakeDriver(ack=None)
    connection = await connect_device(driver, timings=FAST_TIMINGS)
    result = await connection.send_text(
        "ping", destination=0x1234, ordering=Ordering.AWAIT_ACK
    )
    assert result.ok
    assert result.acked is False
    assert result.error == "ack timeout"
    connection.close()


async def test_send_when_not_ready_fails_softly() -> None:
    connection = DeviceConnection(FakeDriver(), timings=FAST_TIMINGS)
    result = await connection.send_text("hello")
    assert not result.ok
    assert "not ready" in (result.error or "")


def test_parse_text_packet() -> None:
    packet = {
        "from": 0x1234,
        "to": 0xFFFFFFFF,
        "channel": 1,
        "rxTime": 1_700_000_000,
        "decoded": {"text": "hi"},
    }
    parsed = parse_text_packet(packet)
    assert parsed == TextPacket(
        from_num=0x1234,
        to_num=0xFFFFFFFF,
        channel_index=1,
        text="hi",
        rx_time=1_700_000_000_000,
    )
    payload_only = {"from": 7, "decoded": {"payload": b"bytes text"}}
    assert parse_text_packet(payload_only).text == "bytes text"
    assert parse_text_packet({"from": 7, "decoded": {}}) is None
    assert parse_text_packet({"decoded": {"text": "x"}}) is None
    assert parse_text_packet("garbage") is None


def test_default_timings() -> None:
    timings = DeviceTimings()
    assert timings.configure_timeout == 45.0
    assert timings.config_retry_delay == 0.5
    assert timings.liveness_poll == 2.0


def test_timings_are_overridable() -> None:
    slow = dataclasses.replace(FAST_TIMINGS, configure_timeout=45.0)
    assert slow.configure_timeout == 45.0
    assert slow.config_retry_delay == FAST_TIMINGS.config_retry_delay
