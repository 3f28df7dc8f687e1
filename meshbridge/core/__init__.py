"""Core models, ports and errors."""

from meshbridge.core.errors import (
    BrokerConnectTimeout,
    ConfigurationError,
    DeviceConnectError,
    DeviceConnectTimeout,
    EmptyMessageError,
    InvalidTargetError,
    MeshBridgeError,
    NoActiveConnectionError,
    NotConfiguredError,
)
from meshbridge.core.models import (
    DispatchResult,
    InboundContext,
    InboundMessage,
    Ordering,
    Probe,
    ReplyPayload,
    SendResult,
)

__all__ = [
    "BrokerConnectTimeout",
    "ConfigurationError",
    "DeviceConnectError",
    "DeviceConnectTimeout",
    "DispatchResult",
    "EmptyMessageError",
    "InboundContext",
    "InboundMessage",
    "InvalidTargetError",
    "MeshBridgeError",
    "NoActiveConnectionError",
    "NotConfiguredError",
    "Ordering",
    "Probe",
    "ReplyPayload",
    "SendResult",
]
