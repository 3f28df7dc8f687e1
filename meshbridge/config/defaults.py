"""Centralized defaults for the Meshtastic channel and its transports."""

from __future__ import annotations

from typing import Any

CHANNEL_ID = "meshtastic"
DEFAULT_ACCOUNT_ID = "default"

# LoRa payload ceiling is ~230 bytes; leave headroom for multi-byte characters.
DEFAULT_TEXT_CHUNK_LIMIT = 200
CHUNK_PACING_SECONDS = 1.5

DEVICE_CONFIGURE_TIMEOUT_SECONDS = 45.0
DEVICE_CONFIG_RETRY_DELAY_SECONDS = 0.5
DEVICE_LIVENESS_POLL_SECONDS = 2.0
DEVICE_RELEASE_COOLDOWN_SECONDS = 3.0
DEVICE_ACK_TIMEOUT_SECONDS = 30.0
DEFAULT_TCP_PORT = 4403
PRIMARY_CHANNEL_NAME = "LongFast"

DEFAULT_MQTT: dict[str, Any] = {
    "broker": "mqtt.meshtastic.org",
    "port": 1883,
    "username": "meshdev",
    "password": "large4cats",
    "topic": "msh/US/2/json/#",
    "reconnect_seconds": 5,
}

DEFAULT_CONTROL_COMMANDS: tuple[str, ...] = (
    "/help",
    "/commands",
    "/status",
    "/whoami",
    "/new",
    "/reset",
    "/stop",
    "/model",
    "/compact",
)

DEFAULT_PAIRING: dict[str, Any] = {
    "pending_ttl_minutes": 60,
    "max_pending": 3,
    "code_length": 8,
}

DEFAULT_GATEWAY_RESTART: dict[str, Any] = {
    "initial_ms": 2000,
    "max_ms": 60000,
    "factor": 2.0,
    "jitter": 0.25,
}
