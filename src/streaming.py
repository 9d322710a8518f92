"""
Sliding-window analytics over audit records.

Keeps a FIFO buffer of recent records bounded by time (trailing
window_size_seconds) and by size (max_buffer_size, oldest evicted
first) and computes rolling metrics on demand. There is no background
thread: eviction happens on process() and again on current_metrics(), so
a reader never sees records that have aged out of the window.

Evicted records stay in the audit store; they only leave live metrics.
"""

import logging
import os
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from audit_record import AuditRecord
from monitoring.metrics import MetricsCollector, metrics

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class StreamConfig:
    """
    Window configuration.

    slide_interval_seconds is informational: metrics are recomputed on
    read rather than on a timer.
    """

    window_size_seconds: int = 300
    slide_interval_seconds: int = 60
    max_buffer_size: int = 10000

    def __post_init__(self):
        if self.window_size_seconds <= 0:
            raise ValueError(f"window_size_seconds must be positive, got {self.window_size_seconds}")
        if self.slide_interval_seconds <= 0:
            raise ValueError(
                f"slide_interval_seconds must be positive, got {self.slide_interval_seconds}"
            )
        if self.max_buffer_size < 1:
            raise ValueError(f"max_buffer_size must be at least 1, got {self.max_buffer_size}")

    @classmethod
    def from_env(cls) -> "StreamConfig":
        """
        Read AUDIT_STREAM_WINDOW, AUDIT_STREAM_SLIDE and AUDIT_STREAM_MAX_BUFFER.

        Raises:
            ValueError: If a variable is not a positive integer
        """

        def read(name: str, default: int) -> int:
            raw = os.getenv(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError as e:
                raise ValueError(f"{name} must be an integer, got {raw!r}") from e

        return cls(
            window_size_seconds=read("AUDIT_STREAM_WINDOW", 300),
            slide_interval_seconds=read("AUDIT_STREAM_SLIDE", 60),
            max_buffer_size=read("AUDIT_STREAM_MAX_BUFFER", 10000),
        )


@dataclass
class StreamingMetrics:
    """Rolling metrics for the current window."""

    window_start: datetime
    window_end: datetime
    count: int
    rate: float
    override_pct: float
    event_type_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "count": self.count,
            "rate": self.rate,
            "override_pct": self.override_pct,
            "event_type_counts": dict(self.event_type_counts),
        }


class StreamingAnalyzer:
    """
    Time- and size-bounded buffer of audit records.

    Thread-safe. process() and current_metrics() both evict, so both take
    the same exclusive lock.
    """

    def __init__(
        self,
        config: StreamConfig | None = None,
        clock: Clock | None = None,
        collector: MetricsCollector | None = None,
    ):
        """
        Args:
            config: Window configuration (defaults to StreamConfig())
            clock: Returns "now" as an aware datetime; defaults to UTC wall time
            collector: Where gauges are published (defaults to the global collector)
        """
        self.config = config or StreamConfig()
        self._clock = clock or _utc_now
        self._collector = collector or metrics
        self._buffer: deque[AuditRecord] = deque()
        self._lock = threading.Lock()
        self._latest: datetime | None = None
        self._out_of_order = False

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.config.window_size_seconds)

    def _evict(self, now: datetime) -> None:
        cutoff = now - self.window
        if self._out_of_order:
            # Front of the buffer is no longer the oldest record
            self._buffer = deque(r for r in self._buffer if r.timestamp >= cutoff)
        else:
            while self._buffer and self._buffer[0].timestamp < cutoff:
                self._buffer.popleft()

        overflow = len(self._buffer) - self.config.max_buffer_size
        for _ in range(overflow):
            self._buffer.popleft()

    def process(self, record: AuditRecord) -> None:
        """Add a record, then evict stale and overflowing entries."""
        with self._lock:
            if self._latest is not None and record.timestamp < self._latest:
                if not self._out_of_order:
                    logger.debug(
                        "Out-of-order audit record %s; switching to full eviction scans", record.id
                    )
                self._out_of_order = True
            else:
                self._latest = record.timestamp
            self._buffer.append(record)
            self._evict(self._clock())

    def current_metrics(self) -> StreamingMetrics:
        """Evict stale entries, then compute metrics over what remains."""
        with self._lock:
            now = self._clock()
            self._evict(now)

            count = len(self._buffer)
            overrides = sum(1 for r in self._buffer if r.is_override)
            event_type_counts: dict[str, int] = {}
            for record in self._buffer:
                key = record.event_type.value
                event_type_counts[key] = event_type_counts.get(key, 0) + 1

        result = StreamingMetrics(
            window_start=now - self.window,
            window_end=now,
            count=count,
            rate=count / self.config.window_size_seconds,
            override_pct=(100.0 * overrides / count) if count else 0.0,
            event_type_counts=event_type_counts,
        )

        self._collector.set_gauge("stream_window_count", result.count)
        self._collector.set_gauge("stream_rate_per_second", result.rate)
        self._collector.set_gauge("stream_override_pct", result.override_pct)
        return result

    def buffer_size(self) -> int:
        with self._lock:
            return len(self._buffer)

    def reset(self) -> None:
        with self._lock:
            self._buffer.clear()
            self._latest = None
            self._out_of_order = False
