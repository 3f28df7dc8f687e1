"""Exception types raised across component boundaries.

Only configuration problems and connection-establishment failures are raised
to callers. Delivery failures, malformed inbound data and policy rejections
are absorbed and logged where they happen.
"""

from __future__ import annotations


class MeshBridgeError(RuntimeError):
    """Base class for all meshbridge errors."""


class ConfigurationError(MeshBridgeError):
    """Caller-side configuration or input problem. Never retried automatically."""


class NotConfiguredError(ConfigurationError):
    """Account transport is missing its required endpoint."""

    def __init__(self, account_id: str):
        super().__init__(
            f'Meshtastic is not configured for account "{account_id}". '
            "Set channels.meshtastic.transport and connection details."
        )
        self.account_id = account_id


class InvalidTargetError(ConfigurationError):
    """Target or node id could not be parsed."""


class EmptyMessageError(ConfigurationError):
    """Outbound message body is empty after preparation."""


class NoActiveConnectionError(MeshBridgeError):
    """No live send handle is installed for the account."""

    def __init__(self, account_id: str, transport: str):
        super().__init__(
            f"No active {transport} connection for account \"{account_id}\". "
            "Start the gateway first."
        )
        self.account_id = account_id
        self.transport = transport


class DeviceConnectError(MeshBridgeError):
    """Device session could not be established."""


class DeviceConnectTimeout(DeviceConnectError):
    """Device did not reach the ready state in time."""


class BrokerConnectTimeout(MeshBridgeError):
    """Broker did not accept the connection in time."""
