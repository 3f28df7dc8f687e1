"""Device connection manager for serial and TCP radios."""

from meshbridge.device.client import DeviceConnection, DeviceTimings, connect_device
from meshbridge.device.driver import DeviceDriver, MeshtasticDriver, TextPacket
from meshbridge.device.state import ConnectionState

__all__ = [
    "ConnectionState",
    "DeviceConnection",
    "DeviceDriver",
    "DeviceTimings",
    "MeshtasticDriver",
    "TextPacket",
    "connect_device",
]
