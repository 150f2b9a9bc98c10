"""
Scaling infrastructure for LunarScry.

Provides the named locks that serialise moderation operations per content
item within the API process.

Usage:
    from scaling import get_lock_manager

    lock_manager = get_lock_manager()
    with lock_manager.lock("content:CONTENT-1234"):
        ...
"""

from scaling.locking import (
    LocalLockManager,
    LockManager,
    content_lock_name,
)

__all__ = [
    "LockManager",
    "LocalLockManager",
    "content_lock_name",
    "get_lock_manager",
    "reset_lock_manager",
]

_lock_manager: LockManager | None = None


def get_lock_manager() -> LockManager:
    """Get the process-wide lock manager."""
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = LocalLockManager()
    return _lock_manager


def reset_lock_manager() -> None:
    """Drop the cached lock manager (tests, configuration reloads)."""
    global _lock_manager
    _lock_manager = None
