"""
Metrics collection for the pNode crawler.

A small, thread-safe registry of:
- Counters: monotonically increasing values (cycles run, probe outcomes)
- Gauges: point-in-time values (nodes online right now)
- Histograms: distributions (sync cycle duration)

Everything is exported in Prometheus text format under the
``pnode_crawler_`` prefix.
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

METRIC_PREFIX = "pnode_crawler_"

# Sync cycles run from well under a second to the 300 s deadline
DEFAULT_BUCKETS_MS = [100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 120000, 300000]


@dataclass
class HistogramBucket:
    le: float  # Less than or equal to
    count: int = 0


@dataclass
class Histogram:
    """Cumulative-bucket histogram."""

    name: str
    bounds: list[float] = field(default_factory=lambda: list(DEFAULT_BUCKETS_MS))
    buckets: list[HistogramBucket] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            self.buckets = [HistogramBucket(le=b) for b in self.bounds]
            self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Collects counters, gauges, and histograms with optional labels.
    """

    def __init__(self, prefix: str = METRIC_PREFIX):
        self.prefix = prefix
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    def _labels_key(self, labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][self._labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(self._labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] = value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(self._labels_key(labels), 0.0)

    # Histograms

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a timing observation in milliseconds."""
        with self._lock:
            key = self._labels_key(labels)
            if key not in self._histograms[name]:
                self._histograms[name][key] = Histogram(name=name)
            self._histograms[name][key].observe(value_ms)

    def get_histogram(self, name: str, labels: dict[str, str] | None = None) -> Histogram | None:
        with self._lock:
            return self._histograms[name].get(self._labels_key(labels))

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Time a block of code into a histogram."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export

    def get_all(self) -> dict[str, Any]:
        """All metrics as a JSON-serializable dictionary."""
        with self._lock:
            result: dict[str, Any] = {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {},
                "gauges": {},
                "histograms": {},
            }

            for kind, store in (("counters", self._counters), ("gauges", self._gauges)):
                for name, values in store.items():
                    if len(values) == 1 and "" in values:
                        result[kind][name] = values[""]
                    else:
                        result[kind][name] = dict(values)

            for name, histograms in self._histograms.items():
                result["histograms"][name] = {
                    (key or "_total"): {
                        "count": hist.count,
                        "sum": hist.sum,
                        "avg": hist.sum / hist.count if hist.count > 0 else 0,
                    }
                    for key, hist in histograms.items()
                }

            return result

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        def sample(metric: str, key: str, value: Any) -> str:
            return f"{metric}{{{key}}} {value}" if key else f"{metric} {value}"

        with self._lock:
            uptime_name = f"{self.prefix}uptime_seconds"
            lines.append(f"# HELP {uptime_name} Time since crawler start")
            lines.append(f"# TYPE {uptime_name} gauge")
            lines.append(f"{uptime_name} {time.time() - self._start_time:.2f}")
            lines.append("")

            for kind, store in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in store.items():
                    metric_name = f"{self.prefix}{name}"
                    lines.append(f"# TYPE {metric_name} {kind}")
                    lines.extend(sample(metric_name, key, value) for key, value in values.items())
                    lines.append("")

            for name, histograms in self._histograms.items():
                metric_name = f"{self.prefix}{name}"
                lines.append(f"# TYPE {metric_name} histogram")
                for key, hist in histograms.items():
                    for bucket in hist.buckets:
                        le_val = "+Inf" if bucket.le == float("inf") else bucket.le
                        le_key = f'{key},le="{le_val}"' if key else f'le="{le_val}"'
                        lines.append(f"{metric_name}_bucket{{{le_key}}} {bucket.count}")
                    lines.append(sample(f"{metric_name}_sum", key, f"{hist.sum:.2f}"))
                    lines.append(sample(f"{metric_name}_count", key, hist.count))
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Process-wide collector used when the engine is not handed one
metrics = MetricsCollector()
