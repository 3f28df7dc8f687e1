"""JSON-file pairing store.

One file per channel under the pairing directory holds pending first-contact
requests and the ids approved through pairing.
"""

from __future__ import annotations

import asyncio
import json
import os
import secrets
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from meshbridge.config.defaults import DEFAULT_PAIRING
from meshbridge.config.schema import PairingConfig
from meshbridge.core.ports import PairingRequestResult
from meshbridge.policy.identity import normalize_allow_entry
from meshbridge.utils.helpers import ensure_dir, get_pairing_path

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PAIRING_APPROVED_MESSAGE = "Pairing approved. You can now message this node."


def build_pairing_reply(channel: str, id_line: str, code: str) -> str:
    """Reply sent once to a new, unapproved sender."""
    return (
        f"Access not configured.\n{id_line}\nPairing code: {code}\n"
        f"Ask the owner to run: meshbridge pairing approve {channel} {code}"
    )


@dataclass(slots=True)
class PairingRequest:
    id: str
    code: str
    created_at: str
    last_seen_at: str
    meta: dict[str, Any] = field(default_factory=dict)


class JsonPairingStore:
    """Pairing approvals and pending requests persisted as JSON."""

    def __init__(
        self,
        directory: Path | None = None,
        *,
        pending_ttl_minutes: int = DEFAULT_PAIRING["pending_ttl_minutes"],
        max_pending: int = DEFAULT_PAIRING["max_pending"],
        code_length: int = DEFAULT_PAIRING["code_length"],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.directory = ensure_dir(directory) if directory is not None else get_pairing_path()
        self.pending_ttl = timedelta(minutes=max(1, pending_ttl_minutes))
        self.max_pending = max(1, max_pending)
        self.code_length = max(4, code_length)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: PairingConfig) -> "JsonPairingStore":
        directory = Path(config.path).expanduser() if config.path else None
        return cls(
            directory,
            pending_ttl_minutes=config.pending_ttl_minutes,
            max_pending=config.max_pending,
        )

    def _path(self, channel: str) -> Path:
        safe = "".join(ch for ch in channel.lower() if ch.isalnum() or ch in "-_") or "default"
        return self.directory / f"{safe}.json"

    def _load(self, channel: str) -> dict[str, Any]:
        path = self._path(channel)
        if not path.exists():
            return {"version": 1, "allowFrom": [], "requests": []}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to read pairing store {}: {}", path, e)
            return {"version": 1, "allowFrom": [], "requests": []}
        if not isinstance(data, dict):
            return {"version": 1, "allowFrom": [], "requests": []}
        data.setdefault("allowFrom", [])
        data.setdefault("requests", [])
        return data

    def _save(self, channel: str, data: dict[str, Any]) -> None:
        path = self._path(channel)
        tmp_path = path.with_name(f".{path.name}.tmp-{os.getpid()}")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        try:
            tmp_path.chmod(0o600)
        except OSError:
            pass
        os.replace(tmp_path, path)

    def _live_requests(self, data: dict[str, Any]) -> list[PairingRequest]:
        cutoff = self._clock() - self.pending_ttl
        live: list[PairingRequest] = []
        for raw in data.get("requests", []):
            if not isinstance(raw, dict):
                continue
            try:
                request = PairingRequest(
                    id=str(raw["id"]),
                    code=str(raw["code"]),
                    created_at=str(raw["created_at"]),
                    last_seen_at=str(raw.get("last_seen_at") or raw["created_at"]),
                    meta=dict(raw.get("meta") or {}),
                )
                created = datetime.fromisoformat(request.created_at)
            except (KeyError, TypeError, ValueError):
                continue
            if created >= cutoff:
                live.append(request)
        return live

    def _new_code(self, taken: set[str]) -> str:
        while True:
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.code_length))
            if code not in taken:
                return code

    # File access runs in a worker thread.

    async def read_allow_from(self, channel: str) -> list[str]:
        return await asyncio.to_thread(self.allow_from, channel)

    async def upsert_pairing_request(
        self, channel: str, sender_id: str, meta: dict[str, Any] | None = None
    ) -> PairingRequestResult:
        """Register a pending request, or refresh the sender's live one.

        When the pending queue is full a new sender gets ``created=False`` and
        an empty code.
        """
        return await asyncio.to_thread(self._upsert, channel, sender_id, meta)

    def allow_from(self, channel: str) -> list[str]:
        with self._lock:
            data = self._load(channel)
        return [str(entry) for entry in data.get("allowFrom", []) if str(entry).strip()]

    def _upsert(
        self, channel: str, sender_id: str, meta: dict[str, Any] | None
    ) -> PairingRequestResult:
        now = self._clock().isoformat()
        with self._lock:
            data = self._load(channel)
            requests = self._live_requests(data)
            for request in requests:
                if request.id == sender_id:
                    request.last_seen_at = now
                    if meta:
                        request.meta.update({k: v for k, v in meta.items() if v is not None})
                    data["requests"] = [asdict(r) for r in requests]
                    self._save(channel, data)
                    return PairingRequestResult(code=request.code, created=False)

            if len(requests) >= self.max_pending:
                logger.info(
                    "Pairing queue for {} is full ({}); ignoring {}",
                    channel,
                    self.max_pending,
                    sender_id,
                )
                return PairingRequestResult(code="", created=False)

            code = self._new_code({request.code for request in requests})
            clean_meta = {k: v for k, v in (meta or {}).items() if v is not None}
            requests.append(PairingRequest(sender_id, code, now, now, clean_meta))
            data["requests"] = [asdict(r) for r in requests]
            self._save(channel, data)
        logger.info("New pairing request on {} from {} (code {})", channel, sender_id, code)
        return PairingRequestResult(code=code, created=True)

    def list_requests(self, channel: str) -> list[PairingRequest]:
        with self._lock:
            return self._live_requests(self._load(channel))

    def approve(self, channel: str, code: str) -> str | None:
        """Approve a pending request by code. Returns the approved sender id."""
        wanted = code.strip().upper()
        with self._lock:
            data = self._load(channel)
            requests = self._live_requests(data)
            match = next((r for r in requests if r.code == wanted), None)
            if match is None:
                return None
            allow_from = [str(entry) for entry in data.get("allowFrom", [])]
            normalized = normalize_allow_entry(match.id)
            if normalized not in {normalize_allow_entry(entry) for entry in allow_from}:
                allow_from.append(normalized)
            data["allowFrom"] = allow_from
            data["requests"] = [asdict(r) for r in requests if r is not match]
            self._save(channel, data)
        logger.info("Approved pairing for {} on {}", match.id, channel)
        return match.id
