"""Account listing, resolution and config mutations."""

from meshbridge.accounts.mutators import delete_account, set_account_enabled
from meshbridge.accounts.resolver import (
    ConfigLayer,
    ResolvedAccount,
    describe_account,
    list_account_ids,
    list_enabled_accounts,
    merge_layers,
    normalize_account_id,
    resolve_account,
    resolve_default_account_id,
)

__all__ = [
    "ConfigLayer",
    "ResolvedAccount",
    "delete_account",
    "describe_account",
    "list_account_ids",
    "list_enabled_accounts",
    "merge_layers",
    "normalize_account_id",
    "resolve_account",
    "resolve_default_account_id",
    "set_account_enabled",
]
