"""In-memory activity backend for testing and development."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field

from meshbridge.core.models import Direction


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    channel: str
    account_id: str
    direction: Direction
    at: int


@dataclass
class InMemoryActivity:
    """Activity recorder that keeps every event for inspection."""

    events: list[ActivityEvent] = field(default_factory=list)
    counts: Counter = field(default_factory=Counter)
    last_at: dict[tuple[str, Direction], int] = field(default_factory=dict)

    def record(
        self,
        channel: str,
        account_id: str,
        direction: Direction,
        at: int | None = None,
    ) -> None:
        stamp = at if at is not None else now_ms()
        self.events.append(ActivityEvent(channel, account_id, direction, stamp))
        self.counts[(account_id, direction)] += 1
        self.last_at[(account_id, direction)] = stamp

    # ── Test helpers ─────────────────────────────────────────────────────

    def count(self, account_id: str, direction: Direction) -> int:
        return int(self.counts[(account_id, direction)])

    def last(self, account_id: str, direction: Direction) -> int | None:
        return self.last_at.get((account_id, direction))

    def reset(self) -> None:
        self.events.clear()
        self.counts.clear()
        self.last_at.clear()
