"""
In-memory storage backend for tests and ephemeral deployments.
"""

import copy
import threading
from typing import Any

from storage.base import StorageBackend


class MemoryStorage(StorageBackend):
    """Keeps the snapshot in process memory; lost on exit."""

    def __init__(self):
        self._state: dict[str, Any] | None = None
        self.save_count = 0
        self._lock = threading.Lock()

    def load_state(self) -> dict[str, Any] | None:
        with self._lock:
            # Deep copies so callers cannot mutate the stored snapshot
            return copy.deepcopy(self._state)

    def save_state(self, state: dict[str, Any]) -> None:
        with self._lock:
            self._state = copy.deepcopy(state)
            self.save_count += 1

    def is_available(self) -> bool:
        return True

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info["has_data"] = self._state is not None
            info["save_count"] = self.save_count
        return info

    def clear(self) -> None:
        with self._lock:
            self._state = None
