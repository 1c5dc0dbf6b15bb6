"""
In-process metrics for the cognitive control loop.

Counters, gauges and a small latency histogram kept behind one lock, so the
status reader and the query pipeline can touch the registry from different
threads. Nothing here is exported anywhere; callers take a ``snapshot()``
and ship it where they like.

Usage:
    from cogloop.metrics import metrics

    metrics.inc("queries_total")
    metrics.observe("query_latency_ms", 41.7)
    snapshot = metrics.snapshot()
"""

from __future__ import annotations

import threading
import time
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from cogloop.models import CognitiveMetrics

QUERIES_TOTAL = "queries_total"
QUERIES_FAILED = "queries_failed"
QUERIES_CANCELLED = "queries_cancelled"
EXPLORATION_PATHS_TOTAL = "exploration_paths_total"
FUSION_OPERATIONS_TOTAL = "fusion_operations_total"
QUERY_LATENCY_MS = "query_latency_ms"
LAST_CONFIDENCE = "last_confidence"


class _LatencyHistogram:
    """Running count/sum/min/max of observed values."""

    __slots__ = ("count", "total", "low", "high")

    def __init__(self) -> None:
        self.count = 0
        self.total = 0.0
        self.low = float("inf")
        self.high = 0.0

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.low = min(self.low, value)
        self.high = max(self.high, value)

    def snapshot(self) -> dict[str, Any]:
        if not self.count:
            return {"count": 0, "sum": 0.0, "avg": 0.0, "min": 0.0, "max": 0.0}
        return {
            "count": self.count,
            "sum": round(self.total, 4),
            "avg": round(self.total / self.count, 4),
            "min": round(self.low, 4),
            "max": round(self.high, 4),
        }


class MetricsRegistry:
    """Thread-safe registry of counters, gauges and histograms."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, _LatencyHistogram] = {}
        self._started = time.monotonic()

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def gauge(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms.setdefault(name, _LatencyHistogram()).observe(value)

    def histogram(self, name: str) -> dict[str, Any]:
        with self._lock:
            hist = self._histograms.get(name)
            return hist.snapshot() if hist else _LatencyHistogram().snapshot()

    # -- Query-level recording --

    def record_query(self, record: "CognitiveMetrics") -> None:
        """Fold one completed query's metrics record into the registry."""
        with self._lock:
            self._counters[EXPLORATION_PATHS_TOTAL] = (
                self._counters.get(EXPLORATION_PATHS_TOTAL, 0) + record.exploration_paths
            )
            self._counters[FUSION_OPERATIONS_TOTAL] = (
                self._counters.get(FUSION_OPERATIONS_TOTAL, 0) + record.fusion_operations
            )
            self._histograms.setdefault(QUERY_LATENCY_MS, _LatencyHistogram()).observe(
                record.processing_time_ms
            )
            self._gauges[LAST_CONFIDENCE] = record.confidence_score

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_seconds": round(time.monotonic() - self._started, 1),
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {k: v.snapshot() for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._started = time.monotonic()


# Process-wide registry.
metrics = MetricsRegistry()
