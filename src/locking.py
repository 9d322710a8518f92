"""
Reader/writer locking for shared audit state.

Any number of readers may hold the lock together; a writer holds it
alone. Waiting writers block new readers so a steady stream of queries
cannot starve appends.

Usage:
    lock = ReadWriteLock()

    with lock.read_lock(timeout=5):
        records = list(self._records)

    with lock.write_lock(timeout=5):
        self._records.append(record)
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass


class LockTimeoutError(TimeoutError):
    """Raised when a lock cannot be acquired within its timeout."""
    pass


@dataclass
class LockStats:
    """Point-in-time view of a ReadWriteLock."""

    name: str
    active_readers: int
    writer_active: bool
    waiting_writers: int


class ReadWriteLock:
    """
    Writer-preferring reader/writer lock.

    Not reentrant: a thread holding the write lock must not request the
    read lock (or the write lock) again.
    """

    def __init__(self, name: str = "rwlock"):
        self.name = name
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def _deadline_wait(self, deadline: float | None) -> bool:
        if deadline is None:
            self._cond.wait()
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        self._cond.wait(remaining)
        return True

    def acquire_read(self, timeout: float | None = None) -> bool:
        """
        Acquire shared access.

        Args:
            timeout: Seconds to wait; None waits forever

        Returns:
            True if acquired, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._writer or self._waiting_writers:
                if not self._deadline_wait(deadline):
                    return False
            self._readers += 1
            return True

    def release_read(self) -> None:
        with self._cond:
            if self._readers <= 0:
                raise RuntimeError(f"Lock '{self.name}' released by a non-reader")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: float | None = None) -> bool:
        """
        Acquire exclusive access.

        Args:
            timeout: Seconds to wait; None waits forever

        Returns:
            True if acquired, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    if not self._deadline_wait(deadline):
                        return False
                self._writer = True
                return True
            finally:
                self._waiting_writers -= 1
                # A writer giving up may unblock readers queued behind it
                if not self._writer:
                    self._cond.notify_all()

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError(f"Lock '{self.name}' released without a writer")
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_lock(self, timeout: float | None = None):
        """
        Hold shared access for the enclosed block.

        Raises:
            LockTimeoutError: If the lock cannot be acquired within timeout
        """
        if not self.acquire_read(timeout):
            raise LockTimeoutError(f"Could not acquire read lock '{self.name}' within {timeout}s")
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_lock(self, timeout: float | None = None):
        """
        Hold exclusive access for the enclosed block.

        Raises:
            LockTimeoutError: If the lock cannot be acquired within timeout
        """
        if not self.acquire_write(timeout):
            raise LockTimeoutError(f"Could not acquire write lock '{self.name}' within {timeout}s")
        try:
            yield
        finally:
            self.release_write()

    def stats(self) -> LockStats:
        with self._cond:
            return LockStats(
                name=self.name,
                active_readers=self._readers,
                writer_active=self._writer,
                waiting_writers=self._waiting_writers,
            )
