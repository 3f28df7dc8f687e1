"""Chunked delivery: split replies to the radio payload limit and pace the sends."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from meshbridge.config.defaults import CHANNEL_ID, CHUNK_PACING_SECONDS, DEFAULT_TEXT_CHUNK_LIMIT
from meshbridge.core.models import AccountStatus, DispatchResult, ReplyPayload
from meshbridge.core.ports import ActivityRecorder
from meshbridge.telemetry.activity import now_ms

ChunkSender = Callable[[str], Awaitable[DispatchResult | None]]
SleepFn = Callable[[float], Awaitable[None]]

# Below this share of the limit a word break wastes too much of the packet.
_MIN_BREAK_RATIO = 0.4


def _break_index(text: str, limit: int) -> int:
    index = max(text.rfind(" ", 0, limit + 1), text.rfind("\n", 0, limit + 1))
    if index <= int(limit * _MIN_BREAK_RATIO):
        return -1
    return index


def chunk_text(text: str, limit: int = DEFAULT_TEXT_CHUNK_LIMIT) -> list[str]:
    """Split ``text`` into chunks of at most ``limit`` characters.

    Breaks at the last whitespace inside the window; when that would leave a
    chunk shorter than 40% of the limit the text is cut hard at the limit.
    Chunks are trimmed and empty chunks dropped.
    """
    if limit < 1:
        raise ValueError("chunk limit must be positive")
    remaining = text.strip()
    chunks: list[str] = []
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        index = _break_index(remaining, limit)
        if index < 0:
            head, remaining = remaining[:limit], remaining[limit:]
        else:
            head, remaining = remaining[:index], remaining[index + 1 :]
        head = head.strip()
        if head:
            chunks.append(head)
        remaining = remaining.strip()
    return chunks


def format_text_with_media(payload: ReplyPayload) -> str:
    """Reply text with each media URL appended on its own line."""
    lines = [payload.text.strip()] if payload.text.strip() else []
    lines.extend(url.strip() for url in payload.media_urls if url.strip())
    return "\n".join(lines)


class ChunkedDeliveryPacer:
    """Sends one logical reply as paced chunks through a transport sender."""

    def __init__(
        self,
        *,
        account_id: str,
        activity: ActivityRecorder | None = None,
        status: AccountStatus | None = None,
        pacing_seconds: float = CHUNK_PACING_SECONDS,
        sleep: SleepFn | None = None,
    ):
        self.account_id = account_id
        self.activity = activity
        self.status = status
        self.pacing_seconds = pacing_seconds
        self._sleep = sleep or asyncio.sleep

    async def deliver(
        self,
        payload: ReplyPayload | str,
        send: ChunkSender,
        limit: int | None = None,
    ) -> list[DispatchResult]:
        """Send every chunk in order, waiting ``pacing_seconds`` between sends.

        A failing chunk is logged and the remaining chunks are still sent.
        """
        text = payload if isinstance(payload, str) else format_text_with_media(payload)
        chunks = chunk_text(text, limit or DEFAULT_TEXT_CHUNK_LIMIT)
        if not chunks:
            return []

        results: list[DispatchResult] = []
        for index, chunk in enumerate(chunks):
            if index > 0:
                await self._sleep(self.pacing_seconds)
            try:
                result = await send(chunk)
            except Exception as e:
                logger.warning(
                    "[{}] chunk {}/{} send failed: {}", self.account_id, index + 1, len(chunks), e
                )
                result = DispatchResult(ok=False, error=str(e))
            if result is None:
                result = DispatchResult(ok=True)
            elif not result.ok:
                logger.warning(
                    "[{}] chunk {}/{} not sent: {}",
                    self.account_id,
                    index + 1,
                    len(chunks),
                    result.error,
                )
            results.append(result)

        stamp = now_ms()
        if self.status is not None:
            self.status.last_outbound_at = stamp
        if self.activity is not None:
            self.activity.record(CHANNEL_ID, self.account_id, "outbound", stamp)
        logger.debug("[{}] delivered reply in {} chunk(s)", self.account_id, len(chunks))
        return results
