"""
Observability for the statute audit system.

- Counters, gauges and timing histograms (Prometheus text export)
- Structured logging with JSON output and redaction

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("audit_records_stored")
    with metrics.timer("audit_store_ms"):
        ...

    logger = get_logger(__name__)
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics

__all__ = [
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "LoggingContext",
]
