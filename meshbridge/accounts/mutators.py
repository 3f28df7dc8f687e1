"""Mutations on the raw configuration tree. Each returns a new Config."""

from __future__ import annotations

from meshbridge.accounts.resolver import normalize_account_id
from meshbridge.config.defaults import DEFAULT_ACCOUNT_ID
from meshbridge.config.schema import AccountConfig, Config, MeshtasticSection

# Connection fields cleared when the default account is removed.
BASE_CONNECTION_FIELDS = ("name", "transport", "serial_port", "tcp_address", "tcp_tls", "mqtt")


def _matching_key(accounts: dict[str, AccountConfig], account_id: str) -> str | None:
    if account_id in accounts:
        return account_id
    for key in accounts:
        if normalize_account_id(key) == account_id:
            return key
    return None


def set_account_enabled(config: Config, account_id: str | None, enabled: bool) -> Config:
    """Enable or disable an account.

    The default account toggles the section flag; other accounts get (or gain)
    an entry under ``accounts``.
    """
    updated = config.model_copy(deep=True)
    section = updated.channels.meshtastic or MeshtasticSection()
    normalized = normalize_account_id(account_id)

    if normalized == DEFAULT_ACCOUNT_ID:
        section.enabled = enabled
    else:
        accounts = dict(section.accounts or {})
        key = _matching_key(accounts, normalized) or normalized
        entry = accounts.get(key) or AccountConfig()
        entry.enabled = enabled
        accounts[key] = entry
        section.accounts = accounts

    updated.channels.meshtastic = section
    return updated


def delete_account(config: Config, account_id: str | None) -> Config:
    """Remove an account. The default account only loses its connection fields."""
    updated = config.model_copy(deep=True)
    section = updated.channels.meshtastic
    if section is None:
        return updated

    normalized = normalize_account_id(account_id)
    accounts = dict(section.accounts or {})
    key = _matching_key(accounts, normalized)
    if key is not None:
        del accounts[key]
    elif normalized == DEFAULT_ACCOUNT_ID:
        for field_name in BASE_CONNECTION_FIELDS:
            setattr(section, field_name, None)

    section.accounts = accounts or None
    return updated
