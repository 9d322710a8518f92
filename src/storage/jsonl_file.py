"""
JSON Lines file storage backend.

Durable, human-readable audit log: a header line followed by one JSON
record per line, in chain order. Records are appended and fsynced one at
a time; the file is only rewritten by retention purges.

File layout:
    {"_header": {"format": "statute-audit-jsonl", "version": 1, "anchor": null, "cipher": null}}
    {"id": "...", "timestamp": "...", ..., "previous_hash": null, "record_hash": "..."}
    ...

With encryption enabled each record line is an ENC:L: line and the
header carries the cipher salt.
"""

import json
import logging
import os
from collections.abc import Iterable
from typing import Any

from audit_record import AuditRecord
from encryption import EncryptionError, RecordCipher
from storage.base import (
    DEFAULT_LOCK_TIMEOUT,
    AuditStorage,
    StorageError,
    StorageReadError,
    StorageWriteError,
)

logger = logging.getLogger(__name__)

FILE_FORMAT = "statute-audit-jsonl"
FILE_VERSION = 1


class JSONLFileStorage(AuditStorage):
    """
    JSONL file storage backend.

    The whole log is loaded into memory on open; reads are served from
    memory and every append goes straight to disk.
    """

    def __init__(
        self,
        file_path: str = "audit_log.jsonl",
        encryption_key: str | None = None,
        lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT,
    ):
        """
        Open (or create on first append) a JSONL audit log.

        Args:
            file_path: Path to the log
            encryption_key: Passphrase for per-line AES-GCM; None for plaintext
            lock_timeout: Seconds to wait for the reader/writer lock

        Raises:
            StorageReadError: If the existing file cannot be parsed or decrypted
        """
        super().__init__(lock_timeout)
        self.file_path = file_path
        self._encryption_key = encryption_key
        self._cipher: RecordCipher | None = None
        self._records: list[AuditRecord] = []
        self._index: dict[str, AuditRecord] = {}
        self._anchor: str | None = None
        self._tip: str | None = None
        self._load()

    @property
    def encryption_enabled(self) -> bool:
        return self._cipher is not None or self._encryption_key is not None

    # ------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------

    def _load(self) -> None:
        try:
            with open(self.file_path, encoding="utf-8") as f:
                lines = [line.rstrip("\n") for line in f if line.strip()]
        except FileNotFoundError:
            return
        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}") from e
        except OSError as e:
            raise StorageReadError(f"Failed to read {self.file_path}: {e}") from e

        if not lines:
            return

        header = self._parse_header(lines[0])
        self._anchor = header.get("anchor")
        self._cipher = self._open_cipher(header.get("cipher"))

        for line_no, line in enumerate(lines[1:], start=2):
            record = self._parse_line(line, line_no)
            self._records.append(record)
            self._index[record.id] = record

        self._tip = self._records[-1].record_hash if self._records else self._anchor
        logger.debug("Loaded %d audit record(s) from %s", len(self._records), self.file_path)

    def _parse_header(self, line: str) -> dict[str, Any]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise StorageReadError(f"{self.file_path}:1: invalid header: {e}") from e
        header = data.get("_header") if isinstance(data, dict) else None
        if not isinstance(header, dict) or header.get("format") != FILE_FORMAT:
            raise StorageReadError(f"{self.file_path} is not a {FILE_FORMAT} file")
        return header

    def _open_cipher(self, cipher_header: dict[str, Any] | None) -> RecordCipher | None:
        if cipher_header is None:
            if self._encryption_key:
                raise StorageError(
                    f"{self.file_path} is a plaintext log; refusing to append encrypted records"
                )
            return None
        if not self._encryption_key:
            raise StorageReadError(f"{self.file_path} is encrypted and no key was provided")
        try:
            return RecordCipher.from_header(self._encryption_key, cipher_header)
        except EncryptionError as e:
            raise StorageReadError(str(e)) from e

    def _parse_line(self, line: str, line_no: int) -> AuditRecord:
        try:
            if self._cipher is not None:
                line = self._cipher.decrypt_line(line)
            return AuditRecord.from_dict(json.loads(line))
        except EncryptionError as e:
            raise StorageReadError(f"{self.file_path}:{line_no}: {e}") from e
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageReadError(f"{self.file_path}:{line_no}: invalid record: {e}") from e

    # ------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------

    def _header_line(self) -> str:
        header = {
            "format": FILE_FORMAT,
            "version": FILE_VERSION,
            "anchor": self._anchor,
            "cipher": self._cipher.header_dict() if self._cipher else None,
        }
        return json.dumps({"_header": header}, sort_keys=True)

    def _record_line(self, record: AuditRecord) -> str:
        line = record.to_json()
        if self._cipher is not None:
            line = self._cipher.encrypt_line(line)
        return line

    def _write_record(self, record: AuditRecord) -> None:
        try:
            new_file = not os.path.exists(self.file_path) or os.path.getsize(self.file_path) == 0
            if new_file and self._encryption_key and self._cipher is None:
                self._cipher = RecordCipher(self._encryption_key)

            with open(self.file_path, "a", encoding="utf-8") as f:
                if new_file:
                    f.write(self._header_line() + "\n")
                f.write(self._record_line(record) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except PermissionError as e:
            raise StorageWriteError(f"Permission denied: {self.file_path}") from e
        except OSError as e:
            raise StorageWriteError(f"Failed to append to {self.file_path}: {e}") from e

        self._records.append(record)
        self._index[record.id] = record
        self._tip = record.record_hash

    def _rewrite(self, records: list[AuditRecord]) -> None:
        # Write to temp, then atomic rename
        temp_path = f"{self.file_path}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(self._header_line() + "\n")
                for record in records:
                    f.write(self._record_line(record) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.file_path)
        except OSError as e:
            raise StorageWriteError(f"Failed to rewrite {self.file_path}: {e}") from e

    # ------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------

    def _iter_records(self) -> Iterable[AuditRecord]:
        return list(self._records)

    def _lookup(self, record_id: str) -> AuditRecord | None:
        return self._index.get(record_id)

    def _count(self) -> int:
        return len(self._records)

    def _read_tip(self) -> str | None:
        return self._tip

    def _write_tip(self, record_hash: str | None) -> None:
        # In-memory only; reopening the file derives the tip from its last record
        self._tip = record_hash

    def _read_anchor(self) -> str | None:
        return self._anchor

    def _delete_leading(self, count: int, anchor: str | None) -> None:
        retained = self._records[count:]
        previous_anchor = self._anchor
        self._anchor = anchor
        try:
            self._rewrite(retained)
        except StorageWriteError:
            self._anchor = previous_anchor
            raise
        for record in self._records[:count]:
            del self._index[record.id]
        self._records = retained

    def is_available(self) -> bool:
        directory = os.path.dirname(os.path.abspath(self.file_path))
        return os.path.isdir(directory) and os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({
            "file_path": self.file_path,
            "file_exists": os.path.exists(self.file_path),
            "encryption_enabled": self.encryption_enabled,
            "anchor": self.get_anchor(),
        })
        if os.path.exists(self.file_path):
            info["file_size_bytes"] = os.path.getsize(self.file_path)
        return info
