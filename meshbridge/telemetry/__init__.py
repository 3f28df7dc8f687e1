"""Activity recorders.

Provides an in-memory backend (for tests and the plain CLI gateway) and a
Prometheus backend for production scraping.
"""

from meshbridge.telemetry.activity import InMemoryActivity, now_ms
from meshbridge.telemetry.prometheus import PrometheusActivity

__all__ = ["InMemoryActivity", "PrometheusActivity", "now_ms"]
