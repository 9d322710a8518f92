"""
Structured logging for the statute audit system.

- JSONFormatter for log aggregation (one JSON object per line)
- ConsoleFormatter with colours for interactive use
- Thread-local audit context (statute_id, subject_id, ...) attached to
  every record emitted inside a LoggingContext
- Redaction of secrets and personal identifiers before anything is written
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Redaction
# ============================================================

SENSITIVE_PATTERNS = [
    # key=value / "key": "value" secrets
    (
        re.compile(
            r"(api[_-]?key|token|secret|password|passwd|encryption[_-]?key)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
            re.IGNORECASE,
        ),
        r"\1\2[REDACTED]",
    ),
    # Connection strings with inline credentials
    (re.compile(r"(\w+://[^:/\s]+:)([^@\s]+)(@)"), r"\1[REDACTED]\3"),
    # US social security numbers
    (re.compile(r"\b\d{3}-\d{2}-(\d{4})\b"), r"***-**-\1"),
    # Email addresses (partial)
    (re.compile(r"([a-zA-Z0-9._%+-]+)@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})"), r"\1[...]@\2"),
]

REDACTED_FIELDS = {
    "password",
    "secret",
    "api_key",
    "token",
    "private_key",
    "encryption_key",
    "authorization",
    "ssn",
    "national_id",
    "tax_id",
}

# Attributes every LogRecord carries; anything else was passed via extra=
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


def redact_string(text: str) -> str:
    """Apply every sensitive pattern to a string."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Recursively redact sensitive values.

    Args:
        data: dict, list, string or scalar
        depth: Current recursion depth
        max_depth: Depth after which the value is replaced wholesale

    Returns:
        Copy of data with sensitive fields and patterns redacted
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, dict):
        return {
            key: (
                "[REDACTED]"
                if str(key).lower().replace("-", "_") in REDACTED_FIELDS
                else redact_sensitive_data(value, depth + 1, max_depth)
            )
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str):
        return redact_string(data)
    return data


# ============================================================
# Audit context
# ============================================================

_audit_context = threading.local()


def set_audit_context(**kwargs) -> None:
    if not hasattr(_audit_context, "data"):
        _audit_context.data = {}
    _audit_context.data.update(kwargs)


def clear_audit_context() -> None:
    _audit_context.data = {}


def get_audit_context() -> dict[str, Any]:
    return getattr(_audit_context, "data", {})


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


# ============================================================
# Formatters
# ============================================================


class JSONFormatter(logging.Formatter):
    """
    One JSON object per log record.

    {"timestamp": "...", "level": "CRITICAL", "logger": "audit_trail",
     "message": "...", "context": {"statute_id": "..."}, "record_id": "..."}
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def _clean(self, value: Any) -> Any:
        return redact_sensitive_data(value) if self.redact_sensitive else value

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self._clean(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and self.include_stack_info:
            entry["exception"] = self.formatException(record.exc_info)

        context = get_audit_context()
        if context:
            entry["context"] = self._clean(context)

        for key, value in _extra_fields(record).items():
            entry[key] = self._clean(value)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output for terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self.use_color else ""
        reset = self.RESET if color else ""

        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        msg = f"{color}{timestamp} {record.levelname[0]} [{record.name}]{reset} {record.getMessage()}"

        context = get_audit_context()
        if context:
            msg += " (" + " ".join(f"{k}={v}" for k, v in context.items()) + ")"

        extras = _extra_fields(record)
        if extras:
            msg += " [" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(
    level: str | None = None,
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure the root logger.

    Logs go to stderr so command output on stdout stays machine-readable.

    Args:
        level: Log level name; defaults to LOG_LEVEL or INFO
        json_output: JSON lines instead of console format; defaults to LOG_FORMAT=json
        log_file: Optional file that always receives JSON lines
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        JSONFormatter() if json_output else ConsoleFormatter(use_color=sys.stderr.isatty())
    )
    root.addHandler(handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LoggingContext:
    """
    Attach audit context to every log record emitted inside the block.

    Usage:
        with LoggingContext(statute_id="benefit-1", subject_id="citizen-42"):
            trail.record(...)
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context: dict[str, Any] = {}

    def __enter__(self):
        self.previous_context = get_audit_context().copy()
        set_audit_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        clear_audit_context()
        if self.previous_context:
            set_audit_context(**self.previous_context)
        return False
