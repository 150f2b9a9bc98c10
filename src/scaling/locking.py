"""
Named locks for LunarScry.

Every mutating moderation operation on a content item runs under the lock
"content:<content_id>", making it atomic with respect to reading the
record and tally, applying its delta and writing back. Operations on
different content items proceed in parallel. The moderation state lives in
process memory, so one API process owns it and the locks are process-local.

Usage:
    from scaling import get_lock_manager

    lock_manager = get_lock_manager()
    with lock_manager.lock(content_lock_name(content_id)):
        apply_vote()
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass


# Operations hold a content lock for microseconds; a caller that cannot get
# one within this many seconds fails fast instead of queueing.
DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_LOCK_TTL = 30.0


def content_lock_name(content_id: str) -> str:
    return f"content:{content_id}"


@dataclass
class LockInfo:
    """Information about a held lock."""

    name: str
    holder_id: str
    acquired_at: float
    ttl: float | None = None
    expires_at: float | None = None


class LockManager(ABC):
    """Abstract base class for lock managers."""

    @abstractmethod
    def acquire(
        self,
        name: str,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        ttl: float = DEFAULT_LOCK_TTL,
    ) -> bool:
        """
        Acquire a named lock.

        Args:
            name: Lock identifier
            timeout: Maximum time to wait for lock (seconds)
            ttl: Lock time-to-live (auto-release after this time)

        Returns:
            True if lock acquired, False if timeout
        """

    @abstractmethod
    def release(self, name: str) -> bool:
        """Release a named lock. Returns False if it was not held."""

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""

    @contextmanager
    def lock(self, name: str, timeout: float = DEFAULT_LOCK_TIMEOUT, ttl: float = DEFAULT_LOCK_TTL):
        """
        Context manager for acquiring a lock.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout
        """
        if not self.acquire(name, timeout=timeout, ttl=ttl):
            raise TimeoutError(f"Could not acquire lock '{name}' within {timeout}s")
        try:
            yield
        finally:
            self.release(name)

    def get_info(self, name: str) -> LockInfo | None:
        return None


class LocalLockManager(LockManager):
    """
    Thread-based lock manager.

    Locks are re-entrant so an operation holding a content lock may call
    helpers that take it again.
    """

    def __init__(self):
        self._locks: dict[str, threading.RLock] = {}
        self._depth: dict[str, int] = {}
        self._lock_info: dict[str, LockInfo] = {}
        self._meta_lock = threading.Lock()
        self._instance_id = str(uuid.uuid4())[:8]

    def _get_lock(self, name: str) -> threading.RLock:
        with self._meta_lock:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
            return self._locks[name]

    def acquire(
        self,
        name: str,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        ttl: float = DEFAULT_LOCK_TTL,
    ) -> bool:
        lock = self._get_lock(name)
        if not lock.acquire(timeout=timeout):
            return False

        with self._meta_lock:
            self._depth[name] = self._depth.get(name, 0) + 1
            if self._depth[name] == 1:
                now = time.time()
                self._lock_info[name] = LockInfo(
                    name=name,
                    holder_id=f"{self._instance_id}:{threading.current_thread().name}",
                    acquired_at=now,
                    ttl=ttl,
                    expires_at=now + ttl if ttl else None,
                )
        return True

    def release(self, name: str) -> bool:
        lock = self._get_lock(name)
        with self._meta_lock:
            depth = self._depth.get(name, 0)
        try:
            lock.release()
        except RuntimeError:
            # Not held by this thread
            return False
        with self._meta_lock:
            if depth <= 1:
                self._depth.pop(name, None)
                self._lock_info.pop(name, None)
            else:
                self._depth[name] = depth - 1
        return True

    def is_locked(self, name: str) -> bool:
        return name in self._lock_info

    def get_info(self, name: str) -> LockInfo | None:
        return self._lock_info.get(name)

    def get_all_locks(self) -> list[LockInfo]:
        return list(self._lock_info.values())
