"""Identity normalization for Meshtastic node ids, targets and allowlists."""

from __future__ import annotations

import re
from dataclasses import dataclass

from meshbridge.core.errors import InvalidTargetError

_HEX_ID = re.compile(r"^[0-9a-f]{1,8}$")
_BARE_HEX_ID = re.compile(r"^[0-9a-f]{8}$")
_MAX_NODE_NUM = 0xFFFFFFFF

WILDCARD = "*"


@dataclass(frozen=True, slots=True)
class AllowlistMatch:
    """Result of matching one sender against an allowlist."""

    allowed: bool
    source: str | None = None


def node_num_to_hex(node_num: int) -> str:
    """Convert a numeric node id to ``!hex`` form (2882338817 -> ``!abcd0001``)."""
    return f"!{int(node_num):08x}"


def hex_to_node_num(value: str) -> int:
    """Convert ``!hex`` (or bare hex) to a numeric node id."""
    cleaned = value.strip().lower()
    if cleaned.startswith("!"):
        cleaned = cleaned[1:]
    try:
        parsed = int(cleaned, 16)
    except ValueError:
        raise InvalidTargetError(f"Invalid Meshtastic node ID: {value}") from None
    if parsed < 0 or parsed > _MAX_NODE_NUM:
        raise InvalidTargetError(f"Invalid Meshtastic node ID: {value}")
    return parsed


def normalize_node_id(raw: str) -> str:
    """Normalize a node id to fixed-width ``!hex``.

    Accepts ``!hex``, a bare 8-digit hex id, or a decimal node number. An
    all-digit token is always read as decimal. Anything else is returned
    lowercased so it can still be compared.
    """
    token = str(raw).strip().lower()
    if not token:
        return ""
    if token.startswith("!"):
        digits = token[1:]
        if _HEX_ID.match(digits):
            return f"!{digits.zfill(8)}"
        return token
    if token.isdigit():
        num = int(token)
        if num <= _MAX_NODE_NUM:
            return node_num_to_hex(num)
        return token
    if _BARE_HEX_ID.match(token):
        return f"!{token}"
    return token


def looks_like_node_id(raw: str) -> bool:
    """Check if a string looks like a node id (``!hex`` or a decimal number)."""
    token = str(raw).strip()
    if not token:
        return False
    if token.startswith("!"):
        return bool(_HEX_ID.match(token[1:].lower()))
    return token.isdigit() and int(token) <= _MAX_NODE_NUM


def _strip_prefix(value: str, prefix: str) -> str:
    if value.lower().startswith(prefix):
        return value[len(prefix) :].strip()
    return value


def normalize_messaging_target(raw: str) -> str | None:
    """Normalize an outbound target.

    ``meshtastic:`` is stripped, ``channel:<name>`` resolves to the channel name
    and ``user:<id>`` to a node id. Returns None for empty input.
    """
    target = str(raw or "").strip()
    if not target:
        return None
    target = _strip_prefix(target, "meshtastic:")
    if target.lower().startswith("channel:"):
        return target[len("channel:") :].strip() or None
    target = _strip_prefix(target, "user:")
    if not target:
        return None
    if looks_like_node_id(target):
        return normalize_node_id(target)
    return target


def normalize_allow_entry(raw: str) -> str:
    """Normalize an allowlist entry (lowercase, strip ``meshtastic:``/``user:``)."""
    value = str(raw).strip().lower()
    if not value:
        return ""
    for prefix in ("meshtastic:", "user:"):
        if value.startswith(prefix):
            value = value[len(prefix) :]
    value = value.strip()
    if value == WILDCARD:
        return WILDCARD
    return normalize_node_id(value)


def normalize_allowlist(entries: list[str] | None) -> list[str]:
    """Normalize a list of allowlist entries, dropping empties."""
    normalized: list[str] = []
    for entry in entries or []:
        value = normalize_allow_entry(entry)
        if value:
            normalized.append(value)
    return normalized


def match_allowlist(allow_from: list[str], sender_id: str) -> AllowlistMatch:
    """Check if a sender matches an allowlist; ``*`` admits everyone."""
    entries = {normalize_allow_entry(entry) for entry in allow_from}
    entries.discard("")
    if WILDCARD in entries:
        return AllowlistMatch(allowed=True, source="wildcard")
    node_id = normalize_node_id(sender_id)
    if node_id and node_id in entries:
        return AllowlistMatch(allowed=True, source=node_id)
    return AllowlistMatch(allowed=False)
