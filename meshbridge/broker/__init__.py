"""MQTT broker bridge."""

from meshbridge.broker.client import (
    BrokerConnection,
    BrokerSettings,
    BrokerTextEvent,
    connect_broker,
    parse_broker_message,
)

__all__ = [
    "BrokerConnection",
    "BrokerSettings",
    "BrokerTextEvent",
    "connect_broker",
    "parse_broker_message",
]
