"""Gateway manager: one supervised monitor task per enabled account."""

from __future__ import annotations

import asyncio
import contextlib
import random
from typing import Any

from loguru import logger

from meshbridge.accounts.resolver import list_enabled_accounts
from meshbridge.channels.meshtastic import MeshtasticChannel
from meshbridge.config.schema import GatewayConfig
from meshbridge.core.errors import NotConfiguredError
from meshbridge.core.models import AccountStatus


class GatewayManager:
    """
    Starts and supervises account monitors.

    Responsibilities:
    - Start a monitor for every enabled, configured account
    - Restart a monitor after a device disconnect (immediately) or a connect
      failure (exponential backoff with jitter)
    - Stop everything on shutdown
    """

    def __init__(self, channel: MeshtasticChannel, gateway: GatewayConfig | None = None):
        self.channel = channel
        self.gateway = gateway or channel.config.gateway
        self.statuses: dict[str, AccountStatus] = {}
        self._aborts: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def _compute_backoff_ms(self, attempt: int) -> int:
        initial = max(100, self.gateway.restart_initial_ms)
        factor = max(1.1, self.gateway.restart_factor)
        raw = initial * (factor ** max(0, attempt - 1))
        capped = min(float(self.gateway.restart_max_ms), raw)
        jitter_ratio = max(0.0, min(1.0, self.gateway.restart_jitter))
        jitter = capped * jitter_ratio
        low = max(100.0, capped - jitter)
        high = capped + jitter
        return int(random.uniform(low, high))

    async def _wait_abort(self, abort: asyncio.Event, delay: float) -> bool:
        """Sleep ``delay`` seconds; True when abort fired meanwhile."""
        try:
            await asyncio.wait_for(abort.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _supervise(self, account_id: str, abort: asyncio.Event) -> None:
        status = self.statuses[account_id]
        attempt = 0
        while not abort.is_set():
            monitor = self.channel.create_monitor(account_id, abort=abort, status=status)
            try:
                await monitor.run()
                attempt = 0
                if not abort.is_set():
                    logger.info("[{}] monitor exited, restarting", account_id)
            except NotConfiguredError as e:
                logger.error("[{}] {}", account_id, e)
                status.last_error = str(e)
                return
            except Exception as e:
                attempt += 1
                status.last_error = str(e)
                delay = self._compute_backoff_ms(attempt) / 1000.0
                logger.warning(
                    "[{}] connection failed ({}); retrying in {:.2f}s", account_id, e, delay
                )
                if await self._wait_abort(abort, delay):
                    break
        logger.info("[{}] monitor stopped", account_id)

    def start_all(self) -> list[str]:
        """Start monitors for every enabled, configured account. Returns their ids."""
        started: list[str] = []
        for account in list_enabled_accounts(self.channel.config, env=self.channel.env):
            if not account.configured:
                logger.warning("[{}] skipping: not configured", account.account_id)
                continue
            if account.account_id in self._tasks:
                continue
            abort = asyncio.Event()
            self._aborts[account.account_id] = abort
            self.statuses[account.account_id] = AccountStatus(account_id=account.account_id)
            self._tasks[account.account_id] = asyncio.create_task(
                self._supervise(account.account_id, abort),
                name=f"gateway-{account.account_id}",
            )
            started.append(account.account_id)
        if not started:
            logger.warning("No Meshtastic accounts enabled and configured")
        return started

    async def wait(self) -> None:
        """Block until every supervised task has ended."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def stop_all(self) -> None:
        """Abort every monitor and wait for teardown."""
        logger.info("Stopping all Meshtastic accounts...")
        for abort in self._aborts.values():
            abort.set()
        for account_id, task in list(self._tasks.items()):
            with contextlib.suppress(asyncio.CancelledError):
                try:
                    await task
                except Exception as e:
                    logger.error("Error stopping {}: {}", account_id, e)
        self._tasks.clear()
        self._aborts.clear()

    def get_status(self) -> dict[str, Any]:
        """Runtime status of every supervised account."""
        return {
            account_id: {
                "running": status.running,
                "last_inbound_at": status.last_inbound_at,
                "last_outbound_at": status.last_outbound_at,
                "last_error": status.last_error,
            }
            for account_id, status in self.statuses.items()
        }
