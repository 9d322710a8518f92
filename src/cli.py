#!/usr/bin/env python3
"""
Statute Audit Command Line Interface.

Provides commands for comparing statute versions and inspecting audit logs:
    - diff: Compare two statute versions and classify the changes
    - verify: Verify the hash chain of a JSONL audit log
    - stats: Replay an audit log through the streaming analyzer
    - metrics: Export collector metrics for an audit log (Prometheus or JSON)
    - keygen: Generate a random AUDIT_ENCRYPTION_KEY
    - check: Verify installation and configuration

Usage:
    statute-audit diff OLD NEW [--format text|json|markdown] [--fail-on-breaking]
    statute-audit verify LOG [--encrypted] [--json]
    statute-audit stats LOG [--window SECONDS] [--max-buffer N] [--encrypted] [--json]
    statute-audit metrics LOG [--window SECONDS] [--encrypted] [--format prometheus|json]
    statute-audit keygen
    statute-audit check
    statute-audit --version

Exit codes: 0 success, 1 breaking changes (with --fail-on-breaking) or a
broken audit chain, 2 usage or input errors.
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import replace

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "statute.py")):
    sys.path.insert(0, os.path.dirname(__file__))

from monitoring import configure_logging  # noqa: E402

__version__ = "0.1.0"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

logger = logging.getLogger(__name__)


def _error(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return EXIT_USAGE


def cmd_diff(args) -> int:
    """Compare two statute versions."""
    from compatibility import ChangeCompatibility, analyze_changes, summarize_compatibility
    from statute import StatuteFormatError, load_statute
    from statute_diff import DiffError, diff, diff_to_dict, format_markdown, summarize

    try:
        old = load_statute(args.old)
        new = load_statute(args.new)
        statute_diff = diff(old, new)
    except (StatuteFormatError, DiffError) as e:
        return _error(str(e))

    analyses = analyze_changes(statute_diff)
    summary = summarize_compatibility(analyses)

    if args.format == "json":
        payload = diff_to_dict(statute_diff)
        payload["analyses"] = [a.to_dict() for a in analyses]
        payload["compatibility"] = summary.to_dict()
        print(json.dumps(payload, indent=2))
    elif args.format == "markdown":
        print(format_markdown(statute_diff, analyses), end="")
        print()
        print(f"**Overall compatibility:** {summary.overall_compatibility.value}")
    else:
        print(summarize(statute_diff), end="")
        print()
        print(f"Compatibility: {summary.overall_compatibility.value} "
              f"({summary.breaking_changes} breaking, "
              f"{summary.backward_compatible_changes} backward-compatible, "
              f"{summary.non_breaking_changes} non-breaking)")

    if args.fail_on_breaking and summary.overall_compatibility == ChangeCompatibility.BREAKING:
        return EXIT_FAILED
    return EXIT_OK


def _open_log(args):
    """Returns (storage, None), or (None, exit code) after printing the error."""
    from storage import JSONLFileStorage, StorageError

    if not os.path.exists(args.log):
        return None, _error(f"File not found: {args.log}")

    key = None
    if args.encrypted:
        from encryption import get_encryption_key

        key = get_encryption_key()
        if not key:
            return None, _error("--encrypted requires AUDIT_ENCRYPTION_KEY to be set")

    try:
        return JSONLFileStorage(args.log, encryption_key=key), None
    except StorageError as e:
        return None, _error(str(e))


def cmd_verify(args) -> int:
    """Verify the hash chain of a JSONL audit log."""
    from audit_trail import AuditTrail
    from storage import IntegrityViolationError

    storage, code = _open_log(args)
    if storage is None:
        return code

    trail = AuditTrail(storage)
    try:
        report = trail.verify_integrity()
    except IntegrityViolationError:
        report = trail.check_integrity()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    elif report.verified:
        print(f"OK: {report.checked} record(s) verified")
    else:
        print(f"FAILED: chain broken at record {report.first_invalid_id}")
        print(f"  Reason: {report.reason}")
        print(f"  Affected records: {len(report.invalid_ids)} of {report.checked}")

    return EXIT_OK if report.verified else EXIT_FAILED


def _stream_config(args):
    """Returns (config, None), or (None, exit code) after printing the error."""
    from streaming import StreamConfig

    overrides = {}
    if args.window is not None:
        overrides["window_size_seconds"] = args.window
    if getattr(args, "max_buffer", None) is not None:
        overrides["max_buffer_size"] = args.max_buffer
    try:
        return replace(StreamConfig.from_env(), **overrides), None
    except ValueError as e:
        return None, _error(str(e))


def _replay(records, config):
    """Feed records through a StreamingAnalyzer whose clock is event time."""
    from streaming import StreamingAnalyzer

    # The window trails the newest record replayed so far
    latest = []

    def clock():
        return latest[0]

    analyzer = StreamingAnalyzer(config, clock=clock)
    for record in records:
        if not latest or record.timestamp > latest[0]:
            latest[:] = [record.timestamp]
        analyzer.process(record)
    return analyzer


def cmd_stats(args) -> int:
    """Replay a JSONL audit log through the streaming analyzer."""
    config, code = _stream_config(args)
    if config is None:
        return code

    storage, code = _open_log(args)
    if storage is None:
        return code

    records = storage.get_all()
    analyzer = _replay(records, config)

    if not records:
        print("No records in log")
        return EXIT_OK

    result = analyzer.current_metrics()
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return EXIT_OK

    print(f"Window: {result.window_start.isoformat()} .. {result.window_end.isoformat()}")
    print(f"Records in window: {result.count} (of {len(records)} replayed)")
    print(f"Rate: {result.rate:.3f}/s")
    print(f"Overrides: {result.override_pct:.1f}%")
    for event_type, count in sorted(result.event_type_counts.items()):
        print(f"  {event_type}: {count}")
    return EXIT_OK


def cmd_metrics(args) -> int:
    """Verify and replay a log, then export the process metrics."""
    from audit_trail import AuditTrail
    from monitoring import metrics
    from storage import IntegrityViolationError

    config, code = _stream_config(args)
    if config is None:
        return code

    storage, code = _open_log(args)
    if storage is None:
        return code

    trail = AuditTrail(storage)
    try:
        report = trail.verify_integrity()
    except IntegrityViolationError:
        report = trail.check_integrity()
    metrics.set_gauge("audit_records_checked", report.checked)

    records = storage.get_all()
    if records:
        _replay(records, config).current_metrics()

    if args.format == "json":
        print(json.dumps(metrics.get_all(), indent=2))
    else:
        print(metrics.to_prometheus())
    return EXIT_OK if report.verified else EXIT_FAILED


def cmd_keygen(args) -> int:
    """Print a fresh key for AUDIT_ENCRYPTION_KEY."""
    from encryption import ENCRYPTION_KEY_ENV, generate_encryption_key

    key = generate_encryption_key()
    if args.env:
        print(f"{ENCRYPTION_KEY_ENV}={key}")
    else:
        print(key)
    return EXIT_OK


def cmd_check(args) -> int:
    """Check installation and configuration."""
    print("Statute Audit Installation Check")
    print("=" * 40)

    checks = []

    try:
        import yaml  # noqa: F401

        checks.append(("YAML statute files", "OK"))
    except ImportError as e:
        checks.append(("YAML statute files", f"FAIL: {e}"))

    try:
        from encryption import is_encryption_enabled

        status = "OK (enabled)" if is_encryption_enabled() else "OK (disabled)"
        checks.append(("Encryption", status))
    except ImportError as e:
        checks.append(("Encryption", f"FAIL: {e}"))

    try:
        from streaming import StreamConfig

        config = StreamConfig.from_env()
        checks.append((
            f"Streaming (window {config.window_size_seconds}s, "
            f"buffer {config.max_buffer_size})",
            "OK",
        ))
    except ValueError as e:
        checks.append(("Streaming", f"FAIL: {e}"))

    from storage import StorageError, get_storage_backend

    try:
        storage = get_storage_backend()
        backend_name = storage.__class__.__name__
        status = "OK" if storage.is_available() else "WARN (not available)"
        checks.append((f"Storage ({backend_name})", status))
        storage.close()
    except StorageError as e:
        checks.append(("Storage", f"FAIL: {e}"))

    try:
        import psycopg2  # noqa: F401

        checks.append(("PostgreSQL support", "OK"))
    except ImportError:
        checks.append(("PostgreSQL support", "SKIP (psycopg2 not installed)"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status.startswith("OK") else ("○" if "SKIP" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    print("Configuration:")
    print(f"  AUDIT_STORAGE_BACKEND: {os.getenv('AUDIT_STORAGE_BACKEND', 'memory (default)')}")
    print(f"  AUDIT_LOG_FILE: {os.getenv('AUDIT_LOG_FILE', 'audit_log.jsonl (default)')}")
    print(f"  DATABASE_URL: {'configured' if os.getenv('DATABASE_URL') else 'not set'}")
    print(f"  LOG_LEVEL: {os.getenv('LOG_LEVEL', 'INFO (default)')}")
    print(f"  LOG_FORMAT: {os.getenv('LOG_FORMAT', 'console (default)')}")

    print()
    if all_ok:
        print("All checks passed!")
        return EXIT_OK
    print("Some checks failed. See above for details.")
    return EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="statute-audit",
        description="Statute version diffing and tamper-evident decision auditing",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Log level (default: LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # diff command
    diff_parser = subparsers.add_parser("diff", help="Compare two statute versions")
    diff_parser.add_argument("old", help="Old statute version (JSON or YAML)")
    diff_parser.add_argument("new", help="New statute version (JSON or YAML)")
    diff_parser.add_argument(
        "--format", choices=["text", "json", "markdown"], default="text", help="Output format"
    )
    diff_parser.add_argument(
        "--fail-on-breaking", action="store_true", help="Exit 1 if any change is breaking"
    )

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Verify a JSONL audit log's hash chain")
    verify_parser.add_argument("log", help="Path to the JSONL audit log")
    verify_parser.add_argument(
        "--encrypted", action="store_true", help="Decrypt lines with AUDIT_ENCRYPTION_KEY"
    )
    verify_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Replay a log through the streaming analyzer")
    stats_parser.add_argument("log", help="Path to the JSONL audit log")
    stats_parser.add_argument("--window", type=int, help="Window size in seconds")
    stats_parser.add_argument("--max-buffer", type=int, help="Maximum records in the window")
    stats_parser.add_argument(
        "--encrypted", action="store_true", help="Decrypt lines with AUDIT_ENCRYPTION_KEY"
    )
    stats_parser.add_argument("--json", action="store_true", help="Print metrics as JSON")

    # metrics command
    metrics_parser = subparsers.add_parser(
        "metrics", help="Verify and replay a log, then export collector metrics"
    )
    metrics_parser.add_argument("log", help="Path to the JSONL audit log")
    metrics_parser.add_argument("--window", type=int, help="Window size in seconds")
    metrics_parser.add_argument(
        "--encrypted", action="store_true", help="Decrypt lines with AUDIT_ENCRYPTION_KEY"
    )
    metrics_parser.add_argument(
        "--format", choices=["prometheus", "json"], default="prometheus", help="Output format"
    )

    # keygen command
    keygen_parser = subparsers.add_parser("keygen", help="Generate an encryption key")
    keygen_parser.add_argument(
        "--env", action="store_true", help="Print as an AUDIT_ENCRYPTION_KEY= line for .env files"
    )

    # check command
    subparsers.add_parser("check", help="Check installation and configuration")

    return parser


COMMANDS = {
    "diff": cmd_diff,
    "verify": cmd_verify,
    "stats": cmd_stats,
    "metrics": cmd_metrics,
    "keygen": cmd_keygen,
    "check": cmd_check,
}


def main(argv=None) -> int:
    """Main CLI entry point."""
    from dotenv import load_dotenv

    load_dotenv()

    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_USAGE

    if args.command not in COMMANDS:
        parser.print_help()
        return EXIT_USAGE

    configure_logging(level=args.log_level)
    logger.debug("Running command %s", args.command)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
