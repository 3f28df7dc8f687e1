"""Prometheus activity backend.

Exposes per-account message counters and last-activity timestamps at
/metrics for scraping.

Usage:
    activity = PrometheusActivity(PrometheusSettings(enabled=True, port=9464))
    activity.start()
    activity.record("meshtastic", "default", "inbound")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from meshbridge.config.schema import PrometheusSettings
from meshbridge.core.models import Direction
from meshbridge.telemetry.activity import now_ms

if TYPE_CHECKING:
    from prometheus_client import Counter, Gauge


class PrometheusActivity:
    """Activity recorder backed by ``prometheus_client``.

    Binds to localhost by default. Override ``host`` in the telemetry settings
    for external scraping.
    """

    def __init__(self, settings: PrometheusSettings | None = None) -> None:
        self._settings = settings or PrometheusSettings(enabled=True)
        self._started = False
        self._messages: Counter | None = None
        self._last_activity: Gauge | None = None
        self._connected: Gauge | None = None

        if not self._settings.enabled:
            logger.info("Prometheus activity metrics disabled")
            return

        from prometheus_client import Counter, Gauge, start_http_server

        self._start_http_server = start_http_server
        self._messages = Counter(
            "meshbridge_messages_total",
            "Mesh text messages by direction",
            labelnames=["channel", "account", "direction"],
        )
        self._last_activity = Gauge(
            "meshbridge_last_activity_timestamp_seconds",
            "Unix time of the last message by direction",
            labelnames=["channel", "account", "direction"],
        )
        self._connected = Gauge(
            "meshbridge_account_connected",
            "1 while the account's transport session is up",
            labelnames=["account", "transport"],
        )

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def start(self) -> None:
        """Start the Prometheus HTTP server."""
        if not self._settings.enabled or self._started:
            return
        try:
            self._start_http_server(port=self._settings.port, addr=self._settings.host)
            self._started = True
            logger.info(
                "Prometheus metrics server started on http://{}:{}/metrics",
                self._settings.host,
                self._settings.port,
            )
        except Exception as e:
            logger.error("Failed to start Prometheus server: {}", e)
            self._settings = self._settings.model_copy(update={"enabled": False})

    def record(
        self,
        channel: str,
        account_id: str,
        direction: Direction,
        at: int | None = None,
    ) -> None:
        if self._messages is None or self._last_activity is None:
            return
        labels = {"channel": channel, "account": account_id, "direction": direction}
        self._messages.labels(**labels).inc()
        self._last_activity.labels(**labels).set((at if at is not None else now_ms()) / 1000)

    def set_connected(self, account_id: str, transport: str, connected: bool) -> None:
        if self._connected is None:
            return
        self._connected.labels(account=account_id, transport=transport).set(1 if connected else 0)
