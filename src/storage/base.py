"""
Abstract base class for moderation state storage backends.

A backend persists the complete ModerationOrchestrator snapshot
(ModerationOrchestrator.to_dict()) and returns it on load.
"""

from abc import ABC, abstractmethod
from typing import Any


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class StorageBackend(ABC):
    """Persistence interface for moderation state."""

    @abstractmethod
    def load_state(self) -> dict[str, Any] | None:
        """
        Load the moderation state snapshot.

        Returns:
            Snapshot dictionary, or None if nothing has been saved yet

        Raises:
            StorageReadError: If reading fails
        """

    @abstractmethod
    def save_state(self, state: dict[str, Any]) -> None:
        """
        Replace the stored snapshot.

        Raises:
            StorageWriteError: If writing fails
        """

    @abstractmethod
    def is_available(self) -> bool:
        """True if the backend can currently be written to."""

    def get_info(self) -> dict[str, Any]:
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def close(self) -> None:
        """Release resources; nothing to do by default."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
