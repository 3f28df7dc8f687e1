"""Account resolution: layered merge of section, account and environment settings."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger

from meshbridge.config.defaults import DEFAULT_ACCOUNT_ID, DEFAULT_TEXT_CHUNK_LIMIT
from meshbridge.config.env import MeshtasticEnv, load_env
from meshbridge.config.schema import AccountConfig, Config, DmPolicy, Transport

_INVALID_ID_CHARS = re.compile(r"[^a-z0-9_-]+")
_MAX_ACCOUNT_ID_LENGTH = 64
_TRANSPORTS: frozenset[str] = frozenset({"serial", "tcp", "mqtt"})
_SECTION_ONLY_FIELDS = {"accounts"}


def normalize_account_id(raw: str | None) -> str:
    """Normalize an account id; empty input maps to the default account."""
    value = str(raw or "").strip().lower()
    if not value:
        return DEFAULT_ACCOUNT_ID
    value = _INVALID_ID_CHARS.sub("-", value).strip("-")
    value = value[:_MAX_ACCOUNT_ID_LENGTH]
    return value or DEFAULT_ACCOUNT_ID


@dataclass(frozen=True, slots=True)
class ConfigLayer:
    """One override layer in the account merge.

    ``fill_only`` layers only populate fields that are still empty after the
    layers before them.
    """

    name: str
    values: AccountConfig | None
    fill_only: bool = False


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _apply_layer(merged: dict[str, Any], layer: ConfigLayer) -> None:
    if layer.values is None:
        return
    data = layer.values.model_dump(exclude_none=True, exclude=_SECTION_ONLY_FIELDS)
    for key, value in data.items():
        if key == "mqtt" and isinstance(value, dict):
            nested = dict(merged.get("mqtt") or {})
            for sub_key, sub_value in value.items():
                if layer.fill_only and not _is_empty(nested.get(sub_key)):
                    continue
                nested[sub_key] = sub_value
            merged["mqtt"] = nested
            continue
        if layer.fill_only and not _is_empty(merged.get(key)):
            continue
        merged[key] = value


def merge_layers(layers: Sequence[ConfigLayer]) -> AccountConfig:
    """Apply layers in order. Later layers win field by field; ``mqtt`` merges per field."""
    merged: dict[str, Any] = {}
    for layer in layers:
        _apply_layer(merged, layer)
    return AccountConfig.model_validate(merged)


@dataclass(frozen=True, slots=True)
class ResolvedAccount:
    """Fully merged view of one account."""

    account_id: str
    enabled: bool
    configured: bool
    transport: Transport
    serial_port: str
    tcp_address: str
    tcp_tls: bool
    config: AccountConfig
    name: str | None = None

    @property
    def dm_policy(self) -> DmPolicy:
        return self.config.dm_policy or "pairing"

    @property
    def text_chunk_limit(self) -> int:
        return self.config.text_chunk_limit or DEFAULT_TEXT_CHUNK_LIMIT

    @property
    def mqtt_broker(self) -> str:
        return (self.config.mqtt.broker or "").strip() if self.config.mqtt else ""

    @property
    def address(self) -> str | None:
        """Endpoint for the active transport, or None when unset."""
        if self.transport == "serial":
            return self.serial_port or None
        if self.transport == "tcp":
            return self.tcp_address or None
        return self.mqtt_broker or None


def _account_entries(config: Config) -> dict[str, AccountConfig]:
    section = config.meshtastic
    if section is None or not section.accounts:
        return {}
    return section.accounts


def _find_account_config(config: Config, account_id: str) -> AccountConfig | None:
    accounts = _account_entries(config)
    direct = accounts.get(account_id)
    if direct is not None:
        return direct
    normalized = normalize_account_id(account_id)
    for key, value in accounts.items():
        if normalize_account_id(key) == normalized:
            return value
    return None


def list_account_ids(config: Config) -> list[str]:
    """Configured account ids, normalized and sorted; ``["default"]`` when none."""
    ids = {normalize_account_id(key) for key in _account_entries(config) if key.strip()}
    if not ids:
        return [DEFAULT_ACCOUNT_ID]
    return sorted(ids)


def resolve_default_account_id(config: Config) -> str:
    ids = list_account_ids(config)
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def env_layer(env: MeshtasticEnv) -> ConfigLayer:
    """Build the fill-only environment layer from ``MESHTASTIC_*`` values."""
    values: dict[str, Any] = {}
    transport = env.transport_value
    if transport in _TRANSPORTS:
        values["transport"] = transport
    elif transport:
        logger.warning("Ignoring unknown MESHTASTIC_TRANSPORT value: {}", transport)
    if env.cleaned(env.serial_port):
        values["serial_port"] = env.cleaned(env.serial_port)
    if env.cleaned(env.tcp_address):
        values["tcp_address"] = env.cleaned(env.tcp_address)
    mqtt: dict[str, str] = {}
    if env.cleaned(env.mqtt_broker):
        mqtt["broker"] = env.cleaned(env.mqtt_broker)
    if env.cleaned(env.mqtt_topic):
        mqtt["topic"] = env.cleaned(env.mqtt_topic)
    if mqtt:
        values["mqtt"] = mqtt
    layer_values = AccountConfig.model_validate(values) if values else None
    return ConfigLayer("env", layer_values, fill_only=True)


def account_layers(
    config: Config, account_id: str, env: MeshtasticEnv | None = None
) -> list[ConfigLayer]:
    """Ordered merge layers for ``account_id``: section base, account block, env overlay."""
    layers = [
        ConfigLayer("base", config.meshtastic),
        ConfigLayer("account", _find_account_config(config, account_id)),
    ]
    if account_id == DEFAULT_ACCOUNT_ID:
        layers.append(env_layer(env if env is not None else load_env()))
    return layers


def _is_configured(transport: Transport, merged: AccountConfig) -> bool:
    if transport == "serial":
        return not _is_empty(merged.serial_port)
    if transport == "tcp":
        return not _is_empty(merged.tcp_address)
    if transport == "mqtt":
        return merged.mqtt is not None and not _is_empty(merged.mqtt.broker)
    return False


def _resolve_one(config: Config, account_id: str, env: MeshtasticEnv | None) -> ResolvedAccount:
    merged = merge_layers(account_layers(config, account_id, env))
    section = config.meshtastic
    base_enabled = section is None or section.enabled is not False
    account_entry = _find_account_config(config, account_id)
    account_enabled = account_entry is None or account_entry.enabled is not False

    transport: Transport = merged.transport or "serial"
    serial_port = (merged.serial_port or "").strip()
    tcp_address = (merged.tcp_address or "").strip()
    tcp_tls = bool(merged.tcp_tls)
    resolved_config = merged.model_copy(
        update={
            "transport": transport,
            "serial_port": serial_port or None,
            "tcp_address": tcp_address or None,
            "tcp_tls": tcp_tls,
        }
    )
    return ResolvedAccount(
        account_id=account_id,
        enabled=base_enabled and account_enabled,
        configured=_is_configured(transport, merged),
        transport=transport,
        serial_port=serial_port,
        tcp_address=tcp_address,
        tcp_tls=tcp_tls,
        config=resolved_config,
        name=(merged.name or "").strip() or None,
    )


def resolve_account(
    config: Config,
    account_id: str | None = None,
    *,
    env: MeshtasticEnv | None = None,
) -> ResolvedAccount:
    """Resolve one account.

    Without an explicit id, an unconfigured default falls back to the first
    other enabled account that is configured. The input config is never
    mutated.
    """
    explicit = bool((account_id or "").strip())
    if env is None:
        env = load_env()
    primary = _resolve_one(config, normalize_account_id(account_id), env)
    if explicit or primary.configured:
        return primary

    for candidate_id in list_account_ids(config):
        if candidate_id == primary.account_id:
            continue
        candidate = _resolve_one(config, candidate_id, env)
        if candidate.enabled and candidate.configured:
            logger.debug(
                "Account {} is not configured; using {}", primary.account_id, candidate_id
            )
            return candidate
    return primary


def list_enabled_accounts(
    config: Config, *, env: MeshtasticEnv | None = None
) -> list[ResolvedAccount]:
    if env is None:
        env = load_env()
    accounts = [
        resolve_account(config, account_id, env=env) for account_id in list_account_ids(config)
    ]
    return [account for account in accounts if account.enabled]


def describe_account(account: ResolvedAccount) -> dict[str, Any]:
    """Summary used by status output."""
    return {
        "account_id": account.account_id,
        "name": account.name,
        "enabled": account.enabled,
        "configured": account.configured,
        "transport": account.transport,
        "address": account.address,
        "dm_policy": account.dm_policy,
    }
