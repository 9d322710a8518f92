"""
Audit trail facade.

Ties a storage backend to chain verification, compliance reporting and
an optional streaming analyzer. Every decision the system makes is
recorded here; the store links and hashes each record against the
chain tip, so callers never handle hashes themselves.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from audit_record import (
    Actor,
    AuditRecord,
    DecisionContext,
    DecisionResult,
    EventType,
    IntegrityReport,
    ResultKind,
    verify_chain,
)
from monitoring import LoggingContext, metrics
from storage import (
    AuditQuery,
    AuditStorage,
    IntegrityViolationError,
    RecordNotFoundError,
    get_storage_backend,
)
from streaming import StreamingAnalyzer

logger = logging.getLogger(__name__)


@dataclass
class ComplianceReport:
    """Decision counts over the whole trail plus the chain verification outcome."""

    total: int
    automatic: int
    discretionary: int
    overrides: int
    integrity_verified: bool
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "automatic": self.automatic,
            "discretionary": self.discretionary,
            "overrides": self.overrides,
            "integrity_verified": self.integrity_verified,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass
class SubjectHistory:
    """Every decision about one subject, in chain order."""

    subject_id: str
    records: list[AuditRecord]

    @property
    def total_decisions(self) -> int:
        return len(self.records)

    @property
    def overrides(self) -> int:
        return sum(1 for r in self.records if r.is_override)

    @property
    def statutes(self) -> list[str]:
        """Statute ids in order of first appearance."""
        return list(dict.fromkeys(r.statute_id for r in self.records))

    @property
    def first_seen(self) -> datetime | None:
        return self.records[0].timestamp if self.records else None

    @property
    def last_seen(self) -> datetime | None:
        return self.records[-1].timestamp if self.records else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "total_decisions": self.total_decisions,
            "overrides": self.overrides,
            "statutes": self.statutes,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "records": [r.to_dict() for r in self.records],
        }


class AuditTrail:
    """
    Append-only, tamper-evident log of decisions.

    Usage:
        trail = AuditTrail()
        record = trail.record(
            EventType.AUTOMATIC_DECISION,
            Actor.system("eligibility-engine"),
            statute_id="pension-2024",
            subject_id="citizen-17",
            result=DecisionResult.deterministic("grant"),
        )
        trail.verify_integrity()
    """

    def __init__(
        self,
        storage: AuditStorage | None = None,
        analyzer: StreamingAnalyzer | None = None,
    ):
        """
        Args:
            storage: Backend to persist records in; defaults to get_storage_backend()
            analyzer: Receives every successfully stored record
        """
        self.storage = storage if storage is not None else get_storage_backend()
        self.analyzer = analyzer

    def record(
        self,
        event_type: EventType | AuditRecord,
        actor: Actor | None = None,
        statute_id: str | None = None,
        subject_id: str | None = None,
        result: DecisionResult | None = None,
        context: DecisionContext | None = None,
    ) -> AuditRecord:
        """
        Append a decision to the trail.

        Accepts either a prebuilt AuditRecord or the fields to build one.

        Returns:
            The record as stored, with previous_hash and record_hash set

        Raises:
            ValueError: If fields are missing when no AuditRecord is given
            StorageError: If the backend cannot persist the record
        """
        if isinstance(event_type, AuditRecord):
            record = event_type
        else:
            if actor is None or statute_id is None or subject_id is None or result is None:
                raise ValueError("actor, statute_id, subject_id and result are required")
            record = AuditRecord.create(event_type, actor, statute_id, subject_id, result, context)

        with LoggingContext(statute_id=record.statute_id, subject_id=record.subject_id):
            stored = self.storage.append(record)
            logger.info(
                "Recorded %s for statute %s subject %s (record %s)",
                stored.event_type.value, stored.statute_id, stored.subject_id, stored.id,
            )

        if self.analyzer is not None:
            self.analyzer.process(stored)
        return stored

    def get(self, record_id: str) -> AuditRecord:
        """
        Raises:
            RecordNotFoundError: If no record has this id
        """
        return self.storage.get(record_id)

    def find(self, record_id: str) -> AuditRecord | None:
        try:
            return self.storage.get(record_id)
        except RecordNotFoundError:
            return None

    def query_by_statute(self, statute_id: str) -> list[AuditRecord]:
        return self.storage.get_by_statute(statute_id)

    def query_by_subject(self, subject_id: str) -> list[AuditRecord]:
        return self.storage.get_by_subject(subject_id)

    def query_by_time_range(self, start: datetime, end: datetime) -> list[AuditRecord]:
        """Records with start <= timestamp <= end (inclusive on both ends)."""
        return self.storage.get_by_time_range(start, end)

    def query(
        self,
        statute_id: str | None = None,
        subject_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        event_types: Iterable[EventType] = (),
    ) -> list[AuditRecord]:
        """
        Records matching every given filter, in chain order.

        Raises:
            ValueError: If start is after end
        """
        return self.storage.query(AuditQuery(
            statute_id=statute_id,
            subject_id=subject_id,
            start=start,
            end=end,
            event_types=tuple(event_types),
        ))

    def subject_history(self, subject_id: str) -> SubjectHistory:
        return SubjectHistory(subject_id, self.storage.get_by_subject(subject_id))

    def count(self) -> int:
        return self.storage.count()

    def check_integrity(self) -> IntegrityReport:
        """Verify the hash chain without raising; see verify_integrity()."""
        records, anchor = self.storage.snapshot()
        return verify_chain(records, anchor)

    def verify_integrity(self) -> IntegrityReport:
        """
        Recompute every hash from the first retained record onward.

        Returns:
            IntegrityReport for an intact chain

        Raises:
            IntegrityViolationError: If any record was altered, removed or reordered
        """
        report = self.check_integrity()
        if not report.verified:
            metrics.increment("audit_integrity_violations")
            logger.critical(
                "Audit chain integrity violation at record %s (%d record(s) affected): %s",
                report.first_invalid_id, len(report.invalid_ids), report.reason,
            )
            raise IntegrityViolationError(report.first_invalid_id, report.invalid_ids, report.reason)

        logger.debug("Audit chain verified (%d record(s))", report.checked)
        return report

    def generate_report(self) -> ComplianceReport:
        records, anchor = self.storage.snapshot()
        report = verify_chain(records, anchor)
        if not report.verified:
            metrics.increment("audit_integrity_violations")
            logger.critical(
                "Compliance report generated over a broken audit chain (first invalid record %s)",
                report.first_invalid_id,
            )

        return ComplianceReport(
            total=len(records),
            automatic=sum(1 for r in records if r.result.kind == ResultKind.DETERMINISTIC),
            discretionary=sum(
                1 for r in records if r.result.kind == ResultKind.REQUIRES_DISCRETION
            ),
            overrides=sum(1 for r in records if r.is_override),
            integrity_verified=report.verified,
            generated_at=datetime.now(UTC),
        )

    def statute_history(self, statute_id: str) -> list[AuditRecord]:
        """STATUTE_MODIFIED events for a statute, in chain order."""
        return [
            r for r in self.storage.get_by_statute(statute_id)
            if r.event_type == EventType.STATUTE_MODIFIED
        ]

    def purge_before(self, cutoff: datetime) -> int:
        """Retention: drop leading records older than cutoff. Returns the count removed."""
        return self.storage.purge_before(cutoff)

    def close(self) -> None:
        self.storage.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
