"""Meshtastic channel: facade, per-account monitors and the gateway supervisor."""

from meshbridge.channels.manager import GatewayManager
from meshbridge.channels.meshtastic import MeshtasticChannel, MonitorHandle
from meshbridge.channels.monitor import AccountMonitor

__all__ = ["AccountMonitor", "GatewayManager", "MeshtasticChannel", "MonitorHandle"]
