"""
Abstract base class for audit record storage backends.

AuditStorage implements the append-only, hash-chained contract once;
backends only supply persistence primitives. All mutation (append,
store, set_last_hash, purge_before) runs under the write side of a
reader/writer lock, all queries under the read side.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from audit_record import AuditRecord, EventType, as_utc, compute_record_hash
from locking import LockTimeoutError, ReadWriteLock
from monitoring import metrics

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0


class AuditError(Exception):
    """Base exception for audit trail errors."""
    pass


class StorageError(AuditError):
    """Lock acquisition or backend I/O failure."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class RecordNotFoundError(AuditError):
    """Point lookup miss."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Audit record not found: {record_id}")


class ChainBrokenError(AuditError):
    """A record's previous_hash does not match the current chain tip."""

    def __init__(self, record_id: str, expected: str | None, actual: str | None):
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Record {record_id} links to {actual!r} but the chain tip is {expected!r}"
        )


class InvalidRecordError(AuditError):
    """A pre-sealed record whose record_hash does not match its content."""
    pass


class IntegrityViolationError(AuditError):
    """Hash-chain verification failed; possible tampering."""

    def __init__(self, first_invalid_id: str, invalid_ids: list[str], reason: str | None = None):
        self.first_invalid_id = first_invalid_id
        self.invalid_ids = list(invalid_ids)
        self.reason = reason
        super().__init__(
            f"Audit chain integrity violated at record {first_invalid_id} "
            f"({len(self.invalid_ids)} record(s) affected): {reason}"
        )


@dataclass(frozen=True)
class AuditQuery:
    """
    Composite filter; unset fields match everything.

    Usage:
        storage.query(AuditQuery(statute_id="pension-2024",
                                 event_types=(EventType.HUMAN_OVERRIDE,)))
    """

    statute_id: str | None = None
    subject_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    event_types: tuple[EventType, ...] = ()

    def __post_init__(self):
        for name in ("start", "end"):
            if getattr(self, name) is not None:
                object.__setattr__(self, name, as_utc(getattr(self, name)))
        object.__setattr__(self, "event_types", tuple(self.event_types))
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError(f"start {self.start.isoformat()} is after end {self.end.isoformat()}")

    def matches(self, record: AuditRecord) -> bool:
        """True if the record passes every set filter; start and end are inclusive."""
        if self.statute_id is not None and record.statute_id != self.statute_id:
            return False
        if self.subject_id is not None and record.subject_id != self.subject_id:
            return False
        if self.start is not None and record.timestamp < self.start:
            return False
        if self.end is not None and record.timestamp > self.end:
            return False
        if self.event_types and record.event_type not in self.event_types:
            return False
        return True


class AuditStorage(ABC):
    """
    Append-only store of hash-chained audit records.

    Chain linkage is the store's job: `append` seals an unsealed record
    against the current tip. `store` accepts an already sealed record only
    if it links to the current tip and its hash recomputes.
    """

    def __init__(self, lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout
        self._rwlock = ReadWriteLock(self.__class__.__name__)

    # ------------------------------------------------------------
    # Backend primitives (called with the lock already held)
    # ------------------------------------------------------------

    @abstractmethod
    def _write_record(self, record: AuditRecord) -> None:
        """Persist a sealed record at the end of the chain and make its hash the tip."""
        pass

    @abstractmethod
    def _iter_records(self) -> Iterable[AuditRecord]:
        """All retained records in chain order."""
        pass

    @abstractmethod
    def _lookup(self, record_id: str) -> AuditRecord | None:
        pass

    @abstractmethod
    def _read_tip(self) -> str | None:
        pass

    @abstractmethod
    def _write_tip(self, record_hash: str | None) -> None:
        pass

    @abstractmethod
    def _read_anchor(self) -> str | None:
        """previous_hash expected of the first retained record."""
        pass

    @abstractmethod
    def _delete_leading(self, count: int, anchor: str | None) -> None:
        """Drop the first `count` records and record the new anchor."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    def _count(self) -> int:
        return sum(1 for _ in self._iter_records())

    def _select_by_statute(self, statute_id: str) -> list[AuditRecord]:
        return [r for r in self._iter_records() if r.statute_id == statute_id]

    def _select_by_subject(self, subject_id: str) -> list[AuditRecord]:
        return [r for r in self._iter_records() if r.subject_id == subject_id]

    def _select_by_time_range(self, start: datetime, end: datetime) -> list[AuditRecord]:
        return [r for r in self._iter_records() if start <= r.timestamp <= end]

    def _select(self, query: AuditQuery) -> list[AuditRecord]:
        return [r for r in self._iter_records() if query.matches(r)]

    # ------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------

    @contextmanager
    def _reading(self):
        try:
            with self._rwlock.read_lock(self.lock_timeout):
                yield
        except LockTimeoutError as e:
            raise StorageError(str(e)) from e

    @contextmanager
    def _writing(self):
        try:
            with self._rwlock.write_lock(self.lock_timeout):
                yield
        except LockTimeoutError as e:
            raise StorageError(str(e)) from e

    # ------------------------------------------------------------
    # Append path
    # ------------------------------------------------------------

    def append(self, record: AuditRecord) -> AuditRecord:
        """
        Link a record to the chain tip, hash it and persist it.

        Any caller-supplied previous_hash/record_hash is discarded.

        Args:
            record: Record to append (normally unsealed)

        Returns:
            The sealed record as stored

        Raises:
            ChainBrokenError: If another writer sharing the backend moved the
                tip between the read and the write (PostgreSQL)
            StorageError: If the lock times out or the backend write fails
        """
        with metrics.timer("audit_store_ms"), self._writing():
            sealed = record.sealed(self._read_tip())
            try:
                self._write_record(sealed)
            except ChainBrokenError as e:
                metrics.increment("audit_chain_rejections")
                logger.warning(
                    "Lost chain tip race appending record %s: tip moved to %s",
                    record.id, e.expected,
                )
                raise
        metrics.increment("audit_records_stored")
        return sealed

    def store(self, record: AuditRecord) -> None:
        """
        Persist a record sealed by the caller.

        Raises:
            InvalidRecordError: If the record is unsealed or its hash does not recompute
            ChainBrokenError: If its previous_hash is not the current tip
            StorageError: If the lock times out or the backend write fails
        """
        if not record.is_sealed:
            raise InvalidRecordError(f"Record {record.id} has no record_hash; use append()")
        if record.record_hash != compute_record_hash(record):
            raise InvalidRecordError(f"Record {record.id} hash does not match its content")

        with metrics.timer("audit_store_ms"), self._writing():
            tip = self._read_tip()
            if record.previous_hash != tip:
                metrics.increment("audit_chain_rejections")
                logger.warning(
                    "Rejected audit record %s: previous_hash %s does not match chain tip %s",
                    record.id, record.previous_hash, tip,
                )
                raise ChainBrokenError(record.id, tip, record.previous_hash)
            if self._lookup(record.id) is not None:
                raise InvalidRecordError(f"Record {record.id} is already stored")
            self._write_record(record)
        metrics.increment("audit_records_stored")

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    def get(self, record_id: str) -> AuditRecord:
        """
        Raises:
            RecordNotFoundError: If no record has this id
        """
        with self._reading():
            record = self._lookup(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def get_by_statute(self, statute_id: str) -> list[AuditRecord]:
        with self._reading():
            return self._select_by_statute(statute_id)

    def get_by_subject(self, subject_id: str) -> list[AuditRecord]:
        with self._reading():
            return self._select_by_subject(subject_id)

    def get_by_time_range(self, start: datetime, end: datetime) -> list[AuditRecord]:
        """Records with start <= timestamp <= end, in chain order."""
        with self._reading():
            return self._select_by_time_range(start, end)

    def query(self, query: AuditQuery) -> list[AuditRecord]:
        """Records matching every filter of the query, in chain order."""
        with self._reading():
            return self._select(query)

    def get_all(self) -> list[AuditRecord]:
        with self._reading():
            return list(self._iter_records())

    def count(self) -> int:
        with self._reading():
            return self._count()

    def get_last_hash(self) -> str | None:
        with self._reading():
            return self._read_tip()

    def get_anchor(self) -> str | None:
        with self._reading():
            return self._read_anchor()

    def snapshot(self) -> tuple[list[AuditRecord], str | None]:
        """Consistent (records, anchor) pair for verification."""
        with self._reading():
            return list(self._iter_records()), self._read_anchor()

    # ------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------

    def set_last_hash(self, record_hash: str | None) -> None:
        """Reattach the tip to an external chain. Not part of the normal append path."""
        with self._writing():
            logger.warning("Audit chain tip reset to %s", record_hash)
            self._write_tip(record_hash)

    def purge_before(self, cutoff: datetime) -> int:
        """
        Retention: remove leading records older than cutoff.

        Only a contiguous prefix is removed, so the retained records stay
        a valid chain; the hash of the last purged record becomes the anchor.

        Returns:
            Number of records removed
        """
        with self._writing():
            removed = 0
            anchor = self._read_anchor()
            for record in self._iter_records():
                if record.timestamp >= cutoff:
                    break
                removed += 1
                anchor = record.record_hash
            if removed:
                self._delete_leading(removed, anchor)

        if removed:
            logger.warning(
                "Purged %d audit record(s) older than %s; chain anchor is now %s",
                removed, cutoff.isoformat(), anchor,
            )
        return removed

    def get_info(self) -> dict[str, Any]:
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
            "record_count": self.count(),
            "last_hash": self.get_last_hash(),
        }

    def close(self) -> None:
        """Release backend resources. Default does nothing."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
