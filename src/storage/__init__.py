"""
Pluggable audit record storage.

Backends share the append-only, hash-chained AuditStorage contract:

- Memory (default; tests and simulations)
- JSONL file (durable, optionally encrypted per line)
- PostgreSQL (production; requires psycopg2)

Usage:
    from storage import get_storage_backend

    storage = get_storage_backend()
    sealed = storage.append(record)
"""

import os
from typing import TYPE_CHECKING

from storage.base import (
    AuditError,
    AuditQuery,
    AuditStorage,
    ChainBrokenError,
    IntegrityViolationError,
    InvalidRecordError,
    RecordNotFoundError,
    StorageConnectionError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from storage.jsonl_file import JSONLFileStorage
from storage.memory import MemoryAuditStorage

# Lazy import for PostgreSQL to avoid requiring psycopg2
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLAuditStorage

__all__ = [
    "AuditError",
    "AuditQuery",
    "AuditStorage",
    "ChainBrokenError",
    "IntegrityViolationError",
    "InvalidRecordError",
    "JSONLFileStorage",
    "MemoryAuditStorage",
    "RecordNotFoundError",
    "StorageConnectionError",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_storage_backend",
]


def get_storage_backend() -> AuditStorage:
    """
    Build the storage backend selected by environment variables.

    Environment variables:
        AUDIT_STORAGE_BACKEND: "memory" (default), "jsonl" or "postgresql"
        AUDIT_LOG_FILE: Path for JSONL storage (default: audit_log.jsonl)
        DATABASE_URL: PostgreSQL connection URL
        AUDIT_ENCRYPTION_ENABLED / AUDIT_ENCRYPTION_KEY: encrypt JSONL lines

    Raises:
        StorageError: If the backend is unknown or misconfigured
    """
    backend_type = os.getenv("AUDIT_STORAGE_BACKEND", "memory").lower()

    if backend_type == "memory":
        return MemoryAuditStorage()

    if backend_type in ("jsonl", "file"):
        from encryption import get_encryption_key, is_encryption_enabled

        key = get_encryption_key() if is_encryption_enabled() else None
        return JSONLFileStorage(os.getenv("AUDIT_LOG_FILE", "audit_log.jsonl"), encryption_key=key)

    if backend_type in ("postgresql", "postgres"):
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLAuditStorage

        return PostgreSQLAuditStorage(database_url)

    raise StorageError(f"Unknown storage backend: {backend_type}")
