"""Prometheus metrics for calendar synchronization.

Metrics exported:
- calsync_sync_runs_total: Counter of "sync now" runs by direction and outcome
- calsync_sync_duration_seconds: Histogram of "sync now" run latency
- calsync_webhook_notifications_total: Counter of inbound push notifications
- calsync_webhook_renewals_total: Counter of subscription renewal attempts
- calsync_conflicts_detected_total: Counter of persisted conflicts by type
- calsync_conflict_resolutions_total: Counter of resolution attempts
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

sync_runs_total = Counter(
    "calsync_sync_runs_total",
    "Total number of sync-now runs",
    labelnames=["direction", "status"],
)

sync_duration_seconds = Histogram(
    "calsync_sync_duration_seconds",
    "Latency of sync-now runs in seconds",
    labelnames=["direction"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

webhook_notifications_total = Counter(
    "calsync_webhook_notifications_total",
    "Total number of inbound webhook notifications by processing outcome",
    labelnames=["status"],
)

webhook_renewals_total = Counter(
    "calsync_webhook_renewals_total",
    "Total number of webhook subscription renewal attempts",
    labelnames=["status"],
)

conflicts_detected_total = Counter(
    "calsync_conflicts_detected_total",
    "Total number of sync conflicts persisted by the detector",
    labelnames=["conflict_type"],
)

conflict_resolutions_total = Counter(
    "calsync_conflict_resolutions_total",
    "Total number of conflict resolution attempts",
    labelnames=["action", "status"],
)


@contextmanager
def track_sync_duration(direction: str) -> Iterator[None]:
    """Observe the wall-clock duration of the wrapped sync run."""
    start = time.perf_counter()
    try:
        yield
    finally:
        sync_duration_seconds.labels(direction=direction).observe(time.perf_counter() - start)
