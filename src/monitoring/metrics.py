"""
In-process metrics for the statute audit system.

Thread-safe counters, gauges and timing histograms keyed by name and
optional labels, exportable as a dict or as Prometheus text.

Names used across the codebase:
- audit_records_stored, audit_chain_rejections, audit_integrity_violations
- statute_diffs_computed
- audit_store_ms (timing)
- stream_window_count, stream_rate_per_second, stream_override_pct (gauges)
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

# Storage writes are usually sub-millisecond in memory and a few ms on disk
DEFAULT_BUCKETS_MS = (0.1, 0.5, 1, 2.5, 5, 10, 25, 50, 100, 250, 1000)

PROMETHEUS_PREFIX = "statute_audit_"


@dataclass
class Histogram:
    """Cumulative bucket histogram of observed values."""

    bounds: tuple[float, ...] = DEFAULT_BUCKETS_MS
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.counts:
            # Last slot is the +Inf bucket
            self.counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1
        self.counts[-1] += 1

    def buckets(self) -> list[tuple[str, int]]:
        labels = [f"{b:g}" for b in self.bounds] + ["+Inf"]
        return list(zip(labels, self.counts))

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "sum": self.sum,
            "avg": self.sum / self.count if self.count else 0.0,
            "buckets": dict(self.buckets()),
        }


def _labels_key(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


def _series(metric: str, key: str, value: Any) -> str:
    return f"{metric}{{{key}}} {value}" if key else f"{metric} {value}"


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Every series is stored as name -> labels key -> value; the empty
    labels key is the unlabelled series.
    """

    def __init__(self, prefix: str = PROMETHEUS_PREFIX):
        self.prefix = prefix
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][_labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(_labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][_labels_key(labels)] = value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(_labels_key(labels), 0.0)

    # Timings

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a timing observation in milliseconds."""
        with self._lock:
            series = self._histograms[name]
            key = _labels_key(labels)
            if key not in series:
                series[key] = Histogram()
            series[key].observe(value_ms)

    def get_histogram(self, name: str, labels: dict[str, str] | None = None) -> Histogram | None:
        with self._lock:
            return self._histograms.get(name, {}).get(_labels_key(labels))

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Time the enclosed block, recording even if it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export

    def get_all(self) -> dict[str, Any]:
        """Snapshot of every series; unlabelled series collapse to a bare value."""

        def collapse(values: dict[str, Any]) -> Any:
            if len(values) == 1 and "" in values:
                return values[""]
            return dict(values)

        with self._lock:
            return {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {n: collapse(v) for n, v in self._counters.items()},
                "gauges": {n: collapse(v) for n, v in self._gauges.items()},
                "histograms": {
                    n: {(k or "_total"): h.to_dict() for k, h in v.items()}
                    for n, v in self._histograms.items()
                },
            }

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text exposition format."""
        p = self.prefix
        lines = [
            f"# HELP {p}uptime_seconds Time since collector start",
            f"# TYPE {p}uptime_seconds gauge",
            f"{p}uptime_seconds {time.time() - self._start_time:.2f}",
            "",
        ]

        with self._lock:
            for kind, table in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in table.items():
                    lines.append(f"# TYPE {p}{name} {kind}")
                    lines.extend(_series(f"{p}{name}", k, v) for k, v in values.items())
                    lines.append("")

            for name, series in self._histograms.items():
                metric = f"{p}{name}"
                lines.append(f"# TYPE {metric} histogram")
                for key, hist in series.items():
                    for le, count in hist.buckets():
                        bucket_labels = f'{key},le="{le}"' if key else f'le="{le}"'
                        lines.append(f"{metric}_bucket{{{bucket_labels}}} {count}")
                    lines.append(_series(f"{metric}_sum", key, f"{hist.sum:.3f}"))
                    lines.append(_series(f"{metric}_count", key, hist.count))
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Clear every series (used by tests)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Process-wide collector
metrics = MetricsCollector()
