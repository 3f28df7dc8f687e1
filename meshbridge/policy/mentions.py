"""Mention and control-command detection."""

from __future__ import annotations

import re
from collections.abc import Iterable

from loguru import logger


def node_name_pattern(node_name: str | None) -> str | None:
    """``@<node name>`` as an escaped regex, or None when no name is set."""
    name = (node_name or "").strip()
    if not name:
        return None
    return "@" + re.escape(name)


def build_mention_regexes(
    *pattern_groups: Iterable[str] | None,
    node_name: str | None = None,
) -> list[re.Pattern[str]]:
    """Compile mention patterns case-insensitively, skipping invalid ones."""
    sources: list[str] = []
    for group in pattern_groups:
        for pattern in group or ():
            if pattern and pattern not in sources:
                sources.append(pattern)
    injected = node_name_pattern(node_name)
    if injected and injected not in sources:
        sources.append(injected)

    compiled: list[re.Pattern[str]] = []
    for source in sources:
        try:
            compiled.append(re.compile(source, re.IGNORECASE))
        except re.error as e:
            logger.warning("Skipping invalid mention pattern {!r}: {}", source, e)
    return compiled


def matches_mention_patterns(text: str, regexes: Iterable[re.Pattern[str]]) -> bool:
    return any(regex.search(text) for regex in regexes)


def _command_token(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("/"):
        return ""
    token = stripped.split(maxsplit=1)[0].lower()
    token = token.split("@", 1)[0]
    return token.rstrip(":")


def has_control_command(text: str, commands: Iterable[str]) -> bool:
    """True when the message starts with one of the known slash commands."""
    token = _command_token(text)
    if not token:
        return False
    known = {command.strip().lower() for command in commands if command.strip()}
    return token in known
