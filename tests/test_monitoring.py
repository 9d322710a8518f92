"""
Tests for the monitoring package: metrics and structured logging.
"""

import json
import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from monitoring import LoggingContext, MetricsCollector, configure_logging, get_logger
from monitoring.logging import (
    ConsoleFormatter,
    JSONFormatter,
    get_audit_context,
    redact_sensitive_data,
    redact_string,
)


@pytest.fixture
def collector():
    return MetricsCollector()


def _log_record(msg, level=logging.INFO, **extra):
    record = logging.LogRecord("audit_trail", level, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_counters(self, collector):
        """Test counters accumulate per label set."""
        collector.increment("audit_records_stored")
        collector.increment("audit_records_stored", 2)
        collector.increment("audit_records_stored", labels={"backend": "jsonl"})
        assert collector.get_counter("audit_records_stored") == 3
        assert collector.get_counter("audit_records_stored", {"backend": "jsonl"}) == 1
        assert collector.get_counter("unknown") == 0

    def test_gauges(self, collector):
        """Test gauges keep the last value."""
        collector.set_gauge("stream_window_count", 5)
        collector.set_gauge("stream_window_count", 3)
        assert collector.get_gauge("stream_window_count") == 3
        assert collector.get_gauge("unknown") == 0.0

    def test_timer_records_histogram(self, collector):
        """Test timer() records an observation even when the block raises."""
        with collector.timer("audit_store_ms"):
            pass
        with pytest.raises(ValueError):
            with collector.timer("audit_store_ms"):
                raise ValueError("boom")

        histogram = collector.get_histogram("audit_store_ms")
        assert histogram.count == 2
        assert collector.get_histogram("unknown") is None

    def test_histogram_buckets_cumulative(self, collector):
        """Test bucket counts are cumulative with a +Inf bucket."""
        for value in (0.05, 3, 5000):
            collector.timing("audit_store_ms", value)
        buckets = dict(collector.get_histogram("audit_store_ms").buckets())
        assert buckets["0.1"] == 1
        assert buckets["5"] == 2
        assert buckets["1000"] == 2
        assert buckets["+Inf"] == 3

    def test_get_all_collapses_unlabelled(self, collector):
        """Test unlabelled series collapse to a bare value."""
        collector.increment("a")
        collector.increment("b", labels={"kind": "x"})
        data = collector.get_all()
        assert data["counters"]["a"] == 1
        assert data["counters"]["b"] == {'kind="x"': 1}

    def test_to_prometheus(self, collector):
        """Test Prometheus text export."""
        collector.increment("audit_records_stored", labels={"backend": "memory"})
        collector.set_gauge("stream_override_pct", 12.5)
        collector.timing("audit_store_ms", 2)
        text = collector.to_prometheus()
        assert "# TYPE statute_audit_audit_records_stored counter" in text
        assert 'statute_audit_audit_records_stored{backend="memory"} 1' in text
        assert "statute_audit_stream_override_pct 12.5" in text
        assert 'statute_audit_audit_store_ms_bucket{le="2.5"} 1' in text
        assert "statute_audit_audit_store_ms_count 1" in text

    def test_reset(self, collector):
        """Test reset() clears every series."""
        collector.increment("a")
        collector.set_gauge("b", 1)
        collector.reset()
        assert collector.get_all()["counters"] == {}
        assert collector.get_all()["gauges"] == {}


class TestRedaction:
    """Tests for sensitive data redaction."""

    @pytest.mark.parametrize(
        "text,secret",
        [
            ("api_key=abc123", "abc123"),
            ('"password": "hunter2"', "hunter2"),
            ("postgresql://audit:s3cret@db:5432/audit", "s3cret"),
            ("ssn 123-45-6789", "123-45"),
        ],
    )
    def test_redact_string(self, text, secret):
        assert secret not in redact_string(text)

    def test_redact_nested_fields(self):
        """Test sensitive keys are replaced at any depth."""
        data = {"subject": "citizen-1", "details": {"national_id": "X1", "items": [{"token": "t"}]}}
        redacted = redact_sensitive_data(data)
        assert redacted["subject"] == "citizen-1"
        assert redacted["details"]["national_id"] == "[REDACTED]"
        assert redacted["details"]["items"][0]["token"] == "[REDACTED]"

    def test_max_depth(self):
        """Test deeply nested data is cut off."""
        data = {"a": {"b": {"c": "d"}}}
        assert redact_sensitive_data(data, max_depth=1)["a"]["b"] == "[MAX_DEPTH_EXCEEDED]"


class TestFormatters:
    """Tests for the log formatters."""

    def test_json_formatter(self):
        """Test JSON output includes extras and redacts secrets."""
        record = _log_record("connecting with password=hunter2", record_id="r1")
        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "audit_trail"
        assert entry["record_id"] == "r1"
        assert "hunter2" not in entry["message"]
        assert "location" not in entry

    def test_json_formatter_location_for_warnings(self):
        """Test warnings carry their source location."""
        entry = json.loads(JSONFormatter().format(_log_record("purged", logging.WARNING)))
        assert entry["location"]["line"] == 10

    def test_console_formatter(self):
        """Test console output without colour."""
        text = ConsoleFormatter(use_color=False).format(_log_record("stored", record_id="r1"))
        assert "I [audit_trail] stored" in text
        assert "record_id=r1" in text


class TestLoggingContext:
    """Tests for the thread-local audit context."""

    def test_context_attached_and_restored(self):
        """Test nested contexts restore the outer context on exit."""
        with LoggingContext(statute_id="pension-2024"):
            with LoggingContext(subject_id="citizen-1"):
                assert get_audit_context() == {
                    "statute_id": "pension-2024",
                    "subject_id": "citizen-1",
                }
            assert get_audit_context() == {"statute_id": "pension-2024"}
        assert get_audit_context() == {}

    def test_context_in_json_output(self):
        """Test the context appears in formatted records."""
        with LoggingContext(statute_id="pension-2024"):
            entry = json.loads(JSONFormatter().format(_log_record("decided")))
        assert entry["context"] == {"statute_id": "pension-2024"}


class TestConfigureLogging:
    """Tests for configure_logging()."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_level_and_formatter(self):
        """Test explicit level and JSON output."""
        configure_logging(level="DEBUG", json_output=True)
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_environment_defaults(self, monkeypatch):
        """Test LOG_LEVEL and LOG_FORMAT are honoured."""
        monkeypatch.setenv("LOG_LEVEL", "warning")
        monkeypatch.setenv("LOG_FORMAT", "console")
        configure_logging()
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, ConsoleFormatter)

    def test_log_file(self, tmp_path):
        """Test the optional file handler writes JSON lines."""
        path = tmp_path / "audit.log"
        configure_logging(level="INFO", log_file=str(path))
        get_logger("audit_trail").info("Recorded audit record")
        for handler in logging.getLogger().handlers:
            handler.flush()
            if isinstance(handler, logging.FileHandler):
                handler.close()

        entry = json.loads(path.read_text().splitlines()[0])
        assert entry["message"] == "Recorded audit record"
