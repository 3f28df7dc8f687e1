"""Inbound handling: admission, pairing carve-out, context building and reply dispatch."""

from __future__ import annotations

from datetime import UTC, datetime

from loguru import logger

from meshbridge.accounts.resolver import ResolvedAccount
from meshbridge.config.defaults import CHANNEL_ID
from meshbridge.config.schema import Config
from meshbridge.core.models import (
    AccountStatus,
    DispatchResult,
    InboundContext,
    InboundMessage,
    ReplyPayload,
)
from meshbridge.core.ports import PairingStore, ReplyPipeline, SendHandle
from meshbridge.outbound.pacer import ChunkedDeliveryPacer
from meshbridge.pairing.store import build_pairing_reply
from meshbridge.policy.engine import AdmissionDecision, evaluate_admission, resolve_tool_policy
from meshbridge.policy.identity import normalize_node_id
from meshbridge.policy.mentions import build_mention_regexes


def session_key_for(account_id: str, message: InboundMessage) -> str:
    if message.is_group:
        return f"{CHANNEL_ID}:{account_id}:group:{message.channel_label}"
    return f"{CHANNEL_ID}:{account_id}:direct:{message.sender_id}"


def format_envelope(from_label: str, timestamp: int, body: str) -> str:
    """Agent-facing body: ``[Meshtastic <from> <time>] <text>``."""
    if timestamp > 0:
        when = datetime.fromtimestamp(timestamp / 1000, UTC).strftime("%Y-%m-%d %H:%M UTC")
        return f"[Meshtastic {from_label} {when}] {body}"
    return f"[Meshtastic {from_label}] {body}"


class InboundHandler:
    """Runs one account's inbound messages through policy and the reply pipeline.

    Messages are handled one at a time by the owning monitor, so a handler
    never evaluates two messages of the same account concurrently.
    """

    def __init__(
        self,
        *,
        account: ResolvedAccount,
        config: Config,
        pipeline: ReplyPipeline,
        handle: SendHandle,
        pacer: ChunkedDeliveryPacer,
        pairing: PairingStore | None = None,
        status: AccountStatus | None = None,
    ):
        self.account = account
        self.config = config
        self.pipeline = pipeline
        self.send_handle = handle
        self.pacer = pacer
        self.pairing = pairing
        self.status = status
        self.mention_regexes = build_mention_regexes(
            config.messages.group_chat.mention_patterns,
            account.config.mention_patterns,
            node_name=account.config.node_name,
        )

    async def _store_allow_from(self) -> list[str]:
        # A strict allowlist never consults pairing approvals.
        if self.pairing is None or self.account.dm_policy == "allowlist":
            return []
        try:
            return await self.pairing.read_allow_from(CHANNEL_ID)
        except Exception as e:
            logger.warning("[{}] pairing store read failed: {}", self.account.account_id, e)
            return []

    async def handle(self, message: InboundMessage) -> AdmissionDecision | None:
        """Handle one inbound message. Returns the admission decision, or None when ignored."""
        if not message.text.strip():
            return None
        if self.status is not None:
            self.status.last_inbound_at = message.timestamp

        decision = evaluate_admission(
            account=self.account,
            config=self.config,
            message=message,
            store_allow_from=await self._store_allow_from(),
            mention_regexes=self.mention_regexes,
        )
        account_id = self.account.account_id

        if decision.action == "pairing":
            await self._request_pairing(message)
            logger.info(
                "[{}] drop DM sender {} ({})", account_id, message.sender_display, decision.reason
            )
            return decision
        if not decision.admitted:
            target = decision.channel_label if message.is_group else message.sender_display
            logger.info("[{}] drop {} ({})", account_id, target, decision.reason)
            return decision

        ctx = self.build_context(message, decision)
        peer_id = decision.channel_label if message.is_group else message.sender_id

        async def deliver(payload: ReplyPayload) -> None:
            await self.pacer.deliver(
                payload,
                lambda chunk: self._send_chunk(message, peer_id, chunk),
                self.account.text_chunk_limit,
            )

        try:
            await self.pipeline.dispatch(ctx, deliver)
        except Exception as e:
            logger.error("[{}] reply pipeline failed for {}: {}", account_id, ctx.session_key, e)
        return decision

    async def _send_chunk(
        self, message: InboundMessage, peer_id: str, chunk: str
    ) -> DispatchResult:
        if message.is_group:
            return await self.send_handle.send(
                chunk,
                target=peer_id,
                channel_index=message.channel_index,
                channel_name=message.channel_name,
            )
        return await self.send_handle.send(chunk, target=peer_id)

    async def _request_pairing(self, message: InboundMessage) -> None:
        if self.pairing is None:
            return
        sender_id = normalize_node_id(message.sender_id)
        try:
            result = await self.pairing.upsert_pairing_request(
                CHANNEL_ID, sender_id, {"name": message.sender_name}
            )
        except Exception as e:
            logger.warning("[{}] pairing request failed: {}", self.account.account_id, e)
            return
        if not result.created:
            return
        reply = build_pairing_reply(CHANNEL_ID, f"Your node ID: {sender_id}", result.code)
        try:
            await self.pacer.deliver(
                reply,
                lambda chunk: self.send_handle.send(chunk, target=sender_id),
                self.account.text_chunk_limit,
            )
        except Exception as e:
            logger.error(
                "[{}] pairing reply failed for {}: {}",
                self.account.account_id,
                message.sender_display,
                e,
            )

    def build_context(self, message: InboundMessage, decision: AdmissionDecision) -> InboundContext:
        """Context record handed to the reply pipeline."""
        raw_body = message.text.strip()
        label = decision.channel_label
        group_config = decision.group_match.group_config
        is_group = message.is_group
        peer_id = label if is_group else message.sender_id
        from_id = f"{CHANNEL_ID}:channel:{label}" if is_group else f"{CHANNEL_ID}:{peer_id}"
        from_label = label if is_group else message.sender_display

        tool_policy = (
            resolve_tool_policy(decision.group_match, message.sender_id) if is_group else None
        )
        skills = group_config.skills if is_group and group_config is not None else None
        system_prompt = (
            (group_config.system_prompt or "").strip() or None
            if is_group and group_config is not None
            else None
        )

        return InboundContext(
            body=format_envelope(from_label, message.timestamp, raw_body),
            raw_body=raw_body,
            command_body=raw_body,
            from_=from_id,
            to=f"{CHANNEL_ID}:{peer_id}",
            session_key=session_key_for(self.account.account_id, message),
            account_id=self.account.account_id,
            chat_type="group" if is_group else "direct",
            conversation_label=from_label,
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            group_subject=label if is_group else None,
            group_system_prompt=system_prompt,
            was_mentioned=decision.was_mentioned if is_group else None,
            command_authorized=decision.command_authorized,
            message_id=message.message_id,
            timestamp=message.timestamp,
            skill_filter=tuple(skills) if skills is not None else None,
            tool_policy=tool_policy.model_dump(exclude_none=True) if tool_policy else None,
        )
