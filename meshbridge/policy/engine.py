"""Admission policy evaluation.

Every function here is pure: it reads a resolved account, the root config and
one inbound message, and returns a decision. Logging and side effects (pairing
requests, replies) belong to the inbound handler.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from meshbridge.accounts.resolver import ResolvedAccount
from meshbridge.config.schema import ChannelPolicy, Config, GroupPolicy, ToolPolicy
from meshbridge.core.models import InboundMessage
from meshbridge.policy.identity import (
    WILDCARD,
    match_allowlist,
    normalize_allow_entry,
    normalize_allowlist,
    normalize_node_id,
)
from meshbridge.policy.mentions import (
    build_mention_regexes,
    has_control_command,
    matches_mention_patterns,
)

AdmissionAction = Literal["reply", "pairing", "drop"]


@dataclass(frozen=True, slots=True)
class GroupMatch:
    """Channel policy lookup result.

    ``wildcard_config`` is carried even on a direct match so unset fields can
    fall back to the ``*`` entry.
    """

    allowed: bool
    has_configured_groups: bool
    group_config: ChannelPolicy | None = None
    wildcard_config: ChannelPolicy | None = None


@dataclass(frozen=True, slots=True)
class GateResult:
    allowed: bool
    reason: str


@dataclass(frozen=True, slots=True)
class CommandGate:
    command_authorized: bool
    should_block: bool


@dataclass(frozen=True, slots=True)
class CommandAuthorizer:
    configured: bool
    allowed: bool


@dataclass(frozen=True, slots=True)
class EffectiveAllowlists:
    allow_from: list[str]
    group_allow_from: list[str]


@dataclass(frozen=True, slots=True, kw_only=True)
class AdmissionDecision:
    """Final admission outcome for one inbound message."""

    action: AdmissionAction
    reason: str
    channel_label: str
    group_match: GroupMatch
    was_mentioned: bool = False
    command_authorized: bool = False
    has_control_command: bool = False

    @property
    def admitted(self) -> bool:
        return self.action == "reply"


def resolve_group_match(channels: dict[str, ChannelPolicy] | None, target: str) -> GroupMatch:
    """Exact name, then case-insensitive name, then the ``*`` entry."""
    groups = channels or {}
    has_configured = bool(groups)
    wildcard = groups.get(WILDCARD)

    direct = groups.get(target)
    if direct is not None:
        return GroupMatch(True, has_configured, group_config=direct, wildcard_config=wildcard)

    target_lower = target.lower()
    for key, value in groups.items():
        if key != WILDCARD and key.lower() == target_lower:
            return GroupMatch(True, has_configured, group_config=value, wildcard_config=wildcard)

    if wildcard is not None:
        return GroupMatch(True, has_configured, wildcard_config=wildcard)
    return GroupMatch(False, has_configured)


def resolve_group_access(group_policy: GroupPolicy | None, match: GroupMatch) -> GateResult:
    policy = group_policy or "disabled"
    if policy == "disabled":
        return GateResult(False, "group_policy_disabled")
    if policy == "allowlist":
        if not match.has_configured_groups:
            return GateResult(False, "no_channels_configured")
        if not match.allowed:
            return GateResult(False, "not_allowlisted")

    for channel_policy in (match.group_config, match.wildcard_config):
        if channel_policy is not None and channel_policy.enabled is False:
            return GateResult(False, "channel_disabled")

    return GateResult(True, "open" if policy == "open" else "allowlisted")


def resolve_require_mention(
    group_config: ChannelPolicy | None, wildcard_config: ChannelPolicy | None
) -> bool:
    """Channel entry, then wildcard entry, then True."""
    if group_config is not None and group_config.require_mention is not None:
        return group_config.require_mention
    if wildcard_config is not None and wildcard_config.require_mention is not None:
        return wildcard_config.require_mention
    return True


def resolve_mention_gate(
    *,
    is_group: bool,
    require_mention: bool,
    was_mentioned: bool,
    has_control_command: bool,
    allow_text_commands: bool,
    command_authorized: bool,
) -> GateResult:
    if not is_group:
        return GateResult(True, "direct")
    if not require_mention:
        return GateResult(True, "mention_not_required")
    if was_mentioned:
        return GateResult(True, "mentioned")
    if has_control_command and allow_text_commands and command_authorized:
        return GateResult(True, "authorized_command")
    return GateResult(False, "missing_mention")


def resolve_tool_policy(match: GroupMatch, sender_id: str | None = None) -> ToolPolicy | None:
    """Per-sender override, then the channel entry, then the wildcard entry."""
    sender = normalize_node_id(sender_id) if sender_id else ""
    for channel_policy in (match.group_config, match.wildcard_config):
        if channel_policy is None or not channel_policy.tools_by_sender or not sender:
            continue
        for key, policy in channel_policy.tools_by_sender.items():
            if normalize_allow_entry(key) in (sender, WILDCARD):
                return policy
    if match.group_config is not None and match.group_config.tools is not None:
        return match.group_config.tools
    if match.wildcard_config is not None:
        return match.wildcard_config.tools
    return None


def resolve_group_sender_allowed(
    group_policy: GroupPolicy | None,
    sender_id: str,
    outer_allow_from: Sequence[str],
    inner_allow_from: Sequence[str],
    *,
    channel_allowlisted: bool = False,
) -> bool:
    """Channel allowlist wins over the account group allowlist when non-empty.

    With neither list set, senders pass under ``open`` and on channels that
    the ``allowlist`` policy admitted.
    """
    inner = normalize_allowlist(list(inner_allow_from))
    if inner:
        return match_allowlist(inner, sender_id).allowed
    outer = normalize_allowlist(list(outer_allow_from))
    if outer:
        return match_allowlist(outer, sender_id).allowed
    policy = group_policy or "disabled"
    return policy == "open" or (policy == "allowlist" and channel_allowlisted)


def resolve_command_gate(
    *,
    use_access_groups: bool,
    authorizers: Sequence[CommandAuthorizer],
    allow_text_commands: bool,
    has_control_command: bool,
) -> CommandGate:
    if use_access_groups:
        authorized = any(entry.configured and entry.allowed for entry in authorizers)
    else:
        authorized = True
    return CommandGate(
        command_authorized=authorized,
        should_block=allow_text_commands and has_control_command and not authorized,
    )


def resolve_effective_allowlists(
    config_allow_from: Sequence[str],
    config_group_allow_from: Sequence[str],
    store_allow_from: Sequence[str],
) -> EffectiveAllowlists:
    """DM allowlist = config entries plus pairing approvals; group allowlist = config only."""
    allow_from = normalize_allowlist([*config_allow_from, *store_allow_from])
    group_allow_from = normalize_allowlist(list(config_group_allow_from))
    return EffectiveAllowlists(allow_from=allow_from, group_allow_from=group_allow_from)


def resolve_group_policy(config: Config, account: ResolvedAccount) -> GroupPolicy:
    """Account policy, then ``channels.defaults.groupPolicy``, then ``allowlist``."""
    return account.config.group_policy or config.channels.defaults.group_policy or "allowlist"


def _channel_allow_from(match: GroupMatch) -> list[str]:
    direct = normalize_allowlist(match.group_config.allow_from if match.group_config else None)
    if direct:
        return direct
    return normalize_allowlist(match.wildcard_config.allow_from if match.wildcard_config else None)


def evaluate_admission(
    *,
    account: ResolvedAccount,
    config: Config,
    message: InboundMessage,
    store_allow_from: Sequence[str] = (),
    mention_regexes: Sequence[re.Pattern[str]] | None = None,
) -> AdmissionDecision:
    """Run every gate in order and return the first rejection or the admission."""
    text = message.text.strip()
    channel_label = message.channel_label
    match = resolve_group_match(account.config.channels, channel_label)
    group_policy = resolve_group_policy(config, account)
    dm_policy = account.dm_policy

    def decide(action: AdmissionAction, reason: str, **extra: bool) -> AdmissionDecision:
        return AdmissionDecision(
            action=action,
            reason=reason,
            channel_label=channel_label,
            group_match=match,
            **extra,
        )

    if message.is_group:
        access = resolve_group_access(group_policy, match)
        if not access.allowed:
            return decide("drop", access.reason)

    # Pairing approvals never widen a strict allowlist.
    allowlists = resolve_effective_allowlists(
        account.config.allow_from or [],
        account.config.group_allow_from or [],
        () if dm_policy == "allowlist" else store_allow_from,
    )
    command_allow_from = allowlists.group_allow_from if message.is_group else allowlists.allow_from
    allow_text_commands = config.commands.text
    control_command = has_control_command(text, config.commands.control_commands)
    command_gate = resolve_command_gate(
        use_access_groups=config.commands.use_access_groups,
        authorizers=[
            CommandAuthorizer(
                configured=bool(command_allow_from),
                allowed=match_allowlist(command_allow_from, message.sender_id).allowed,
            )
        ],
        allow_text_commands=allow_text_commands,
        has_control_command=control_command,
    )
    flags = {
        "command_authorized": command_gate.command_authorized,
        "has_control_command": control_command,
    }

    if message.is_group:
        if not resolve_group_sender_allowed(
            group_policy,
            message.sender_id,
            allowlists.group_allow_from,
            _channel_allow_from(match),
            channel_allowlisted=match.allowed,
        ):
            return decide("drop", "group_sender_not_allowed", **flags)
    elif dm_policy == "disabled":
        return decide("drop", "dm_policy_disabled", **flags)
    elif dm_policy != "open":
        if not match_allowlist(allowlists.allow_from, message.sender_id).allowed:
            if dm_policy == "pairing":
                return decide("pairing", "pairing_required", **flags)
            return decide("drop", "dm_not_allowlisted", **flags)

    if message.is_group and command_gate.should_block:
        return decide("drop", "unauthorized_control_command", **flags)

    if mention_regexes is None:
        mention_regexes = build_mention_regexes(
            config.messages.group_chat.mention_patterns,
            account.config.mention_patterns,
            node_name=account.config.node_name,
        )
    was_mentioned = matches_mention_patterns(text, mention_regexes)
    require_mention = (
        resolve_require_mention(match.group_config, match.wildcard_config)
        if message.is_group
        else False
    )
    mention_gate = resolve_mention_gate(
        is_group=message.is_group,
        require_mention=require_mention,
        was_mentioned=was_mentioned,
        has_control_command=control_command,
        allow_text_commands=allow_text_commands,
        command_authorized=command_gate.command_authorized,
    )
    if not mention_gate.allowed:
        return decide("drop", mention_gate.reason, was_mentioned=was_mentioned, **flags)
    return decide("reply", mention_gate.reason, was_mentioned=was_mentioned, **flags)
