"""Meshtastic channel facade: the host-facing surface over accounts, monitors and sends."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

from loguru import logger

from meshbridge.accounts.mutators import delete_account, set_account_enabled
from meshbridge.accounts.resolver import (
    ResolvedAccount,
    list_account_ids,
    resolve_account,
    resolve_default_account_id,
)
from meshbridge.bus.reply import SilentReplyPipeline
from meshbridge.channels.monitor import AccountMonitor, BrokerClientFactory, DriverFactory
from meshbridge.config.defaults import CHANNEL_ID
from meshbridge.config.env import MeshtasticEnv
from meshbridge.config.schema import Config, ToolPolicy
from meshbridge.core.errors import InvalidTargetError, NotConfiguredError
from meshbridge.core.models import AccountStatus, Probe, SendResult
from meshbridge.core.ports import ActivityRecorder, PairingStore, ReplyPipeline
from meshbridge.device.client import DeviceTimings
from meshbridge.outbound.send import SendRegistry, active_sends, send_text
from meshbridge.pairing.store import PAIRING_APPROVED_MESSAGE
from meshbridge.policy.engine import (
    resolve_group_match,
    resolve_group_policy,
    resolve_require_mention,
    resolve_tool_policy,
)
from meshbridge.policy.identity import WILDCARD, normalize_allow_entry, normalize_node_id


@dataclass
class MonitorHandle:
    """A running account monitor."""

    account_id: str
    task: asyncio.Task[None]
    abort: asyncio.Event
    status: AccountStatus

    @property
    def done(self) -> bool:
        return self.task.done()

    async def stop(self) -> None:
        """Signal abort and wait for the monitor to finish its teardown."""
        self.abort.set()
        with contextlib.suppress(asyncio.CancelledError):
            try:
                await self.task
            except Exception as e:
                logger.debug("[{}] monitor ended with error: {}", self.account_id, e)


def _limited(items: list[str], limit: int | None) -> list[str]:
    return items[:limit] if limit and limit > 0 else items


class MeshtasticChannel:
    """Entry point for hosts: account management, monitors, sends and directory lookups."""

    id = CHANNEL_ID

    def __init__(
        self,
        config: Config,
        *,
        pipeline: ReplyPipeline | None = None,
        pairing: PairingStore | None = None,
        activity: ActivityRecorder | None = None,
        registry: SendRegistry | None = None,
        env: MeshtasticEnv | None = None,
        driver_factory: DriverFactory | None = None,
        broker_client_factory: BrokerClientFactory | None = None,
        timings: DeviceTimings | None = None,
    ):
        self.config = config
        self.pipeline = pipeline or SilentReplyPipeline()
        self.pairing = pairing
        self.activity = activity
        self.registry = registry or active_sends
        self.env = env
        self.driver_factory = driver_factory
        self.broker_client_factory = broker_client_factory
        self.timings = timings

    # Accounts ---------------------------------------------------------------

    def list_account_ids(self) -> list[str]:
        return list_account_ids(self.config)

    def default_account_id(self) -> str:
        return resolve_default_account_id(self.config)

    def resolve_account(self, account_id: str | None = None) -> ResolvedAccount:
        return resolve_account(self.config, account_id, env=self.env)

    def set_account_enabled(self, account_id: str, enabled: bool) -> Config:
        self.config = set_account_enabled(self.config, account_id, enabled)
        return self.config

    def delete_account(self, account_id: str) -> Config:
        self.config = delete_account(self.config, account_id)
        return self.config

    def resolve_default_to(self, account_id: str | None = None) -> str | None:
        return (self.resolve_account(account_id).config.default_to or "").strip() or None

    # Monitors ---------------------------------------------------------------

    def create_monitor(
        self,
        account_id: str | None = None,
        *,
        abort: asyncio.Event | None = None,
        status: AccountStatus | None = None,
    ) -> AccountMonitor:
        account = self.resolve_account(account_id)
        return AccountMonitor(
            account,
            self.config,
            pipeline=self.pipeline,
            pairing=self.pairing,
            activity=self.activity,
            registry=self.registry,
            status=status,
            abort=abort,
            driver_factory=self.driver_factory,
            broker_client_factory=self.broker_client_factory,
            timings=self.timings,
        )

    def start_account(
        self, account_id: str | None = None, *, abort: asyncio.Event | None = None
    ) -> MonitorHandle:
        """Start a monitor task for the account. Raises NotConfiguredError."""
        monitor = self.create_monitor(account_id, abort=abort)
        if not monitor.account.configured:
            raise NotConfiguredError(monitor.account_id)
        task = asyncio.create_task(monitor.run(), name=f"meshtastic-{monitor.account_id}")
        return MonitorHandle(monitor.account_id, task, monitor.abort, monitor.status)

    # Sending ----------------------------------------------------------------

    async def send_text(
        self,
        target: str,
        text: str,
        *,
        account_id: str | None = None,
        channel_index: int | None = None,
        channel_name: str | None = None,
    ) -> SendResult:
        return await send_text(
            self.config,
            target,
            text,
            account_id=account_id,
            channel_index=channel_index,
            channel_name=channel_name,
            registry=self.registry,
            activity=self.activity,
            env=self.env,
        )

    async def notify_approval(self, sender_id: str, account_id: str | None = None) -> None:
        """Tell a newly approved sender that pairing went through."""
        normalized = normalize_node_id(sender_id)
        if not normalized.startswith("!"):
            raise InvalidTargetError(f"invalid Meshtastic pairing id: {sender_id}")
        await self.send_text(normalized, PAIRING_APPROVED_MESSAGE, account_id=account_id)

    # Status -----------------------------------------------------------------

    def probe_account(self, account_id: str | None = None) -> Probe:
        """Configuration validity only; live link health is not checked."""
        account = self.resolve_account(account_id)
        if not account.configured:
            return Probe(ok=False, transport=account.transport, error="not configured")
        return Probe(ok=True, transport=account.transport, address=account.address)

    def collect_warnings(self, account_id: str | None = None) -> list[str]:
        account = self.resolve_account(account_id)
        warnings: list[str] = []
        if resolve_group_policy(self.config, account) == "open":
            warnings.append(
                '- Meshtastic channels: groupPolicy="open" allows all channels and senders '
                '(mention-gated). Prefer channels.meshtastic.groupPolicy="allowlist" with '
                "channels.meshtastic.channels."
            )
        if account.transport == "mqtt" and not (account.config.mqtt and account.config.mqtt.tls):
            warnings.append("- Meshtastic MQTT TLS is disabled; credentials are sent in plaintext.")
        if account.transport == "tcp" and account.tcp_tls:
            warnings.append(
                "- Meshtastic tcpTls is not supported: the device TCP API is plaintext. "
                "Use an MQTT broker with TLS for encrypted transport."
            )
        return warnings

    # Groups -----------------------------------------------------------------

    def resolve_require_mention(self, group_id: str | None, account_id: str | None = None) -> bool:
        if not group_id:
            return True
        account = self.resolve_account(account_id)
        match = resolve_group_match(account.config.channels, group_id)
        return resolve_require_mention(match.group_config, match.wildcard_config)

    def resolve_tool_policy(
        self, group_id: str | None, account_id: str | None = None, sender_id: str | None = None
    ) -> ToolPolicy | None:
        if not group_id:
            return None
        account = self.resolve_account(account_id)
        match = resolve_group_match(account.config.channels, group_id)
        return resolve_tool_policy(match, sender_id)

    # Directory --------------------------------------------------------------

    def list_peers(
        self, account_id: str | None = None, query: str | None = None, limit: int | None = None
    ) -> list[str]:
        """Node ids named anywhere in the account's allowlists."""
        config = self.resolve_account(account_id).config
        sources = [config.allow_from or [], config.group_allow_from or []]
        sources.extend(policy.allow_from or [] for policy in (config.channels or {}).values())
        ids: list[str] = []
        for entries in sources:
            for entry in entries:
                normalized = normalize_allow_entry(entry)
                if normalized and normalized != WILDCARD and normalized not in ids:
                    ids.append(normalized)
        q = (query or "").strip().lower()
        return _limited([peer for peer in ids if q in peer] if q else ids, limit)

    def list_groups(
        self, account_id: str | None = None, query: str | None = None, limit: int | None = None
    ) -> list[str]:
        """Channel names with an explicit policy entry."""
        channels = self.resolve_account(account_id).config.channels or {}
        groups = [name for name in channels if name != WILDCARD]
        q = (query or "").strip().lower()
        return _limited([g for g in groups if q in g.lower()] if q else groups, limit)
