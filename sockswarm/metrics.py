"""Metrics collection and aggregation with a bounded footprint.

One MetricsSnapshot per run. Counters grow, latency samples do not: the
latency window is a ring buffer (deque) holding the most recent samples, and
every derived figure (average, percentiles, rates) is recomputed on demand
from it. Min/max latency are tracked over the whole run.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from typing import TYPE_CHECKING

from .logging_config import get_logger
from .models import ErrorCategory, MetricsSummary

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger("metrics")

# Latency samples kept for avg/percentile figures
DEFAULT_LATENCY_WINDOW = 1000
# Nominal payload size used for the data-rate estimate (bytes)
AVG_MESSAGE_SIZE_BYTES = 200


def percentile(samples: Sequence[float], p: float) -> float:
    """Nearest-rank percentile: index ceil(p/100 * n) - 1 of the sorted samples.

    Returns 0.0 for an empty sequence.
    """
    if not samples:
        return 0.0
    ordered = sorted(samples)
    index = math.ceil((p / 100.0) * len(ordered)) - 1
    return ordered[max(0, index)]


class MetricsSnapshot:
    """Live counters for one run.

    Mutated only from the event loop thread, so no locking.
    """

    __slots__ = (
        "start_time", "connections_started", "connections_successful", "connections_failed",
        "avg_connection_time_ms", "messages_sent", "messages_received", "errors",
        "error_counts", "min_latency_ms", "max_latency_ms", "_latencies",
    )

    def __init__(self, window: int = DEFAULT_LATENCY_WINDOW, start_time: float | None = None) -> None:
        self.start_time = start_time if start_time is not None else time.perf_counter()
        self.connections_started = 0
        self.connections_successful = 0
        self.connections_failed = 0
        self.avg_connection_time_ms = 0.0
        self.messages_sent = 0
        self.messages_received = 0
        self.errors = 0
        self.error_counts: dict[str, int] = defaultdict(int)
        self.min_latency_ms = math.inf
        self.max_latency_ms = 0.0
        self._latencies: deque[float] = deque(maxlen=window)

    @property
    def latencies(self) -> deque[float]:
        return self._latencies

    def record_connection_started(self) -> None:
        self.connections_started += 1

    def record_connection_success(self, connect_time_ms: float) -> None:
        """Count a successful connect and fold its latency into the running average."""
        self.connections_successful += 1
        n = self.connections_successful
        self.avg_connection_time_ms = (self.avg_connection_time_ms * (n - 1) + connect_time_ms) / n

    def record_connection_failure(self, category: ErrorCategory) -> None:
        self.connections_failed += 1
        self.record_error(category)

    def record_error(self, category: ErrorCategory) -> None:
        self.errors += 1
        self.error_counts[category.value] += 1

    def record_sent(self) -> None:
        self.messages_sent += 1

    def record_latency(self, latency_ms: float) -> None:
        """Add one settled round trip: a latency sample plus one received message."""
        self.messages_received += 1
        self._latencies.append(latency_ms)
        if latency_ms < self.min_latency_ms:
            self.min_latency_ms = latency_ms
        if latency_ms > self.max_latency_ms:
            self.max_latency_ms = latency_ms

    def elapsed_seconds(self, now: float | None = None) -> float:
        now = now if now is not None else time.perf_counter()
        return max(0.0, now - self.start_time)


def compute_summary(snapshot: MetricsSnapshot, now: float | None = None) -> MetricsSummary:
    """Derive rates and latency figures from a snapshot. Pure; safe to call at any time."""
    elapsed = snapshot.elapsed_seconds(now)
    samples = list(snapshot.latencies)
    avg_latency = sum(samples) / len(samples) if samples else 0.0

    if elapsed > 0:
        messages_per_second = snapshot.messages_sent / elapsed
        connection_rate = snapshot.connections_started / elapsed
    else:
        messages_per_second = 0.0
        connection_rate = 0.0

    return MetricsSummary(
        duration_seconds=elapsed,
        connections_started=snapshot.connections_started,
        connections_successful=snapshot.connections_successful,
        connections_failed=snapshot.connections_failed,
        avg_connection_time_ms=snapshot.avg_connection_time_ms,
        messages_sent=snapshot.messages_sent,
        messages_received=snapshot.messages_received,
        min_latency_ms=snapshot.min_latency_ms if samples else 0.0,
        max_latency_ms=snapshot.max_latency_ms,
        avg_latency_ms=avg_latency,
        p95_latency_ms=percentile(samples, 95),
        p99_latency_ms=percentile(samples, 99),
        connection_rate=connection_rate,
        messages_per_second=messages_per_second,
        bytes_per_second=messages_per_second * AVG_MESSAGE_SIZE_BYTES,
        errors=snapshot.errors,
        # Zero messages sent counts as a one-message denominator
        error_rate_pct=100.0 * snapshot.errors / (snapshot.messages_sent or 1),
        error_counts=dict(snapshot.error_counts),
    )
