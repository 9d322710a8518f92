"""
In-memory audit storage backend.

Records live in a list (chain order) plus a dict index by id. Useful for:
- Unit testing
- Development
- Short-lived simulation runs
"""

from collections.abc import Iterable
from typing import Any

from audit_record import AuditRecord
from storage.base import DEFAULT_LOCK_TIMEOUT, AuditStorage


class MemoryAuditStorage(AuditStorage):
    """
    In-memory audit storage.

    All data is lost when the process exits. Records are immutable, so
    they are shared with callers rather than copied.
    """

    def __init__(self, lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT):
        super().__init__(lock_timeout)
        self._records: list[AuditRecord] = []
        self._index: dict[str, AuditRecord] = {}
        self._tip: str | None = None
        self._anchor: str | None = None

    def _write_record(self, record: AuditRecord) -> None:
        self._records.append(record)
        self._index[record.id] = record
        self._tip = record.record_hash

    def _iter_records(self) -> Iterable[AuditRecord]:
        return list(self._records)

    def _lookup(self, record_id: str) -> AuditRecord | None:
        return self._index.get(record_id)

    def _count(self) -> int:
        return len(self._records)

    def _read_tip(self) -> str | None:
        return self._tip

    def _write_tip(self, record_hash: str | None) -> None:
        self._tip = record_hash

    def _read_anchor(self) -> str | None:
        return self._anchor

    def _delete_leading(self, count: int, anchor: str | None) -> None:
        for record in self._records[:count]:
            del self._index[record.id]
        del self._records[:count]
        self._anchor = anchor

    def is_available(self) -> bool:
        return True

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["anchor"] = self.get_anchor()
        return info

    def clear(self) -> None:
        """Drop every record and reset the chain to genesis."""
        with self._writing():
            self._records.clear()
            self._index.clear()
            self._tip = None
            self._anchor = None
