from prometheus_client import REGISTRY

from meshbridge.config.schema import PrometheusSettings
from meshbridge.telemetry import InMemoryActivity, PrometheusActivity


def test_in_memory_activity_counts_and_timestamps() -> None:
    activity = InMemoryActivity()
    activity.record("meshtastic", "default", "inbound", 1_000)
    activity.record("meshtastic", "default", "inbound", 2_000)
    activity.record("meshtastic", "relay", "outbound")

    assert activity.count("default", "inbound") == 2
    assert activity.count("default", "outbound") == 0
    assert activity.last("default", "inbound") == 2_000
    assert activity.last("relay", "outbound") is not None
    assert [event.account_id for event in activity.events] == ["default", "default", "relay"]

    activity.reset()
    assert activity.events == []
    assert activity.last("default", "inbound") is None


def test_disabled_prometheus_is_a_no_op() -> None:
    activity = PrometheusActivity(PrometheusSettings(enabled=False))
    assert not activity.enabled
    activity.start()
    activity.record("meshtastic", "default", "inbound")
    activity.set_connected("default", "serial", True)


def test_prometheus_records_messages_and_connection_state() -> None:
    # Metrics live in the process-wide registry, so only one enabled instance per run.
    activity = PrometheusActivity(PrometheusSettings(enabled=True, port=19464))
    calls: list[tuple[int, str]] = []
    activity._start_http_server = lambda port, addr: calls.append((port, addr))

    activity.start()
    activity.start()
    assert calls == [(19464, "127.0.0.1")]

    activity.record("meshtastic", "default", "outbound", 5_000)
    activity.record("meshtastic", "default", "outbound", 7_000)
    activity.set_connected("default", "tcp", True)

    labels = {"channel": "meshtastic", "account": "default", "direction": "outbound"}
    assert REGISTRY.get_sample_value("meshbridge_messages_total", labels) == 2.0
    assert REGISTRY.get_sample_value("meshbridge_last_activity_timestamp_seconds", labels) == 7.0
    connected = {"account": "default", "transport": "tcp"}
    assert REGISTRY.get_sample_value("meshbridge_account_connected", connected) == 1.0


def test_failed_server_start_disables_export() -> None:
    activity = PrometheusActivity(PrometheusSettings(enabled=False))
    activity._settings = PrometheusSettings(enabled=True)

    def refuse(port, addr):
        raise OSError("address in use")

    activity._start_http_server = refuse
    activity.start()
    assert not activity.enabled
