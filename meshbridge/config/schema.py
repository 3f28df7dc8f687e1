"""Configuration schema using Pydantic."""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from meshbridge.config.defaults import (
    DEFAULT_CONTROL_COMMANDS,
    DEFAULT_GATEWAY_RESTART,
    DEFAULT_PAIRING,
)

Transport = Literal["serial", "tcp", "mqtt"]
DmPolicy = Literal["open", "pairing", "allowlist", "disabled"]
GroupPolicy = Literal["open", "allowlist", "disabled"]


class ConfigModel(BaseModel):
    """Base model: camelCase on disk, snake_case in code."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)


class ToolPolicy(ConfigModel):
    """Tool allow/deny lists for one channel."""

    allow: list[str] | None = None
    deny: list[str] | None = None


class ChannelPolicy(ConfigModel):
    """Per-channel override. Unset fields fall back to the wildcard entry."""

    require_mention: bool | None = None
    enabled: bool | None = None
    allow_from: list[str] | None = None
    system_prompt: str | None = None
    tools: ToolPolicy | None = None
    tools_by_sender: dict[str, ToolPolicy] | None = None
    skills: list[str] | None = None


class MqttConfig(ConfigModel):
    """Broker relay connection settings."""

    broker: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    topic: str | None = None
    publish_topic: str | None = None
    tls: bool | None = None
    node_id: str | None = None  # our own node id, used for self-filtering and as sender


class AccountConfig(ConfigModel):
    """One account's settings. Every field is optional so a block is a pure override layer."""

    name: str | None = None
    enabled: bool | None = None
    transport: Transport | None = None
    node_name: str | None = None
    serial_port: str | None = None
    tcp_address: str | None = Field(
        default=None,
        validation_alias=AliasChoices("tcpAddress", "tcp_address", "httpAddress", "http_address"),
    )
    tcp_tls: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("tcpTls", "tcp_tls", "httpTls", "http_tls"),
    )
    mqtt: MqttConfig | None = None
    dm_policy: DmPolicy | None = None
    allow_from: list[str] | None = None
    default_to: str | None = None
    group_policy: GroupPolicy | None = None
    group_allow_from: list[str] | None = None
    channels: dict[str, ChannelPolicy] | None = None
    mention_patterns: list[str] | None = None
    text_chunk_limit: int | None = Field(default=None, ge=1)

    @field_validator("transport", mode="before")
    @classmethod
    def _legacy_transport(cls, value: object) -> object:
        # "http" was the network-device transport name in older configs.
        if isinstance(value, str) and value.strip().lower() == "http":
            return "tcp"
        return value

    @field_validator("allow_from", "group_allow_from", mode="before")
    @classmethod
    def _stringify_entries(cls, value: object) -> object:
        if isinstance(value, list):
            return [str(entry) for entry in value]
        return value


class MeshtasticSection(AccountConfig):
    """Top-level channel section: base account fields plus named accounts."""

    accounts: dict[str, AccountConfig] | None = None


class ChannelDefaults(ConfigModel):
    """Defaults shared by every channel provider."""

    group_policy: GroupPolicy | None = None


class ChannelsConfig(ConfigModel):
    """Configuration for chat channels."""

    defaults: ChannelDefaults = Field(default_factory=ChannelDefaults)
    meshtastic: MeshtasticSection | None = None


class CommandsConfig(ConfigModel):
    """Text control-command handling."""

    text: bool = True
    use_access_groups: bool = True
    control_commands: list[str] = Field(default_factory=lambda: list(DEFAULT_CONTROL_COMMANDS))


class GroupChatConfig(ConfigModel):
    """Group chat mention detection."""

    mention_patterns: list[str] = Field(default_factory=list)


class MessagesConfig(ConfigModel):
    """Message handling settings shared across channels."""

    group_chat: GroupChatConfig = Field(default_factory=GroupChatConfig)


class PairingConfig(ConfigModel):
    """First-contact pairing store settings."""

    path: str | None = None
    pending_ttl_minutes: int = Field(default=int(DEFAULT_PAIRING["pending_ttl_minutes"]), ge=1)
    max_pending: int = Field(default=int(DEFAULT_PAIRING["max_pending"]), ge=1)


class GatewayConfig(ConfigModel):
    """Account supervisor restart policy."""

    restart_initial_ms: int = int(DEFAULT_GATEWAY_RESTART["initial_ms"])
    restart_max_ms: int = int(DEFAULT_GATEWAY_RESTART["max_ms"])
    restart_factor: float = float(DEFAULT_GATEWAY_RESTART["factor"])
    restart_jitter: float = float(DEFAULT_GATEWAY_RESTART["jitter"])


class PrometheusSettings(ConfigModel):
    """Prometheus exporter settings."""

    enabled: bool = False
    host: str = "127.0.0.1"  # localhost only by default
    port: int = 9464


class TelemetryConfig(ConfigModel):
    """Telemetry backends."""

    prometheus: PrometheusSettings = Field(default_factory=PrometheusSettings)


class Config(ConfigModel):
    """Root configuration for meshbridge."""

    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    pairing: PairingConfig = Field(default_factory=PairingConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @property
    def meshtastic(self) -> MeshtasticSection | None:
        return self.channels.meshtastic
