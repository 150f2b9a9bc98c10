"""
JSON file storage backend (default).

Writes the snapshot to a temporary file and renames it over the target,
so a crash mid-write never leaves a truncated state file.
"""

import json
import os
import shutil
import threading
from datetime import datetime
from typing import Any

from storage.base import StorageBackend, StorageError, StorageReadError, StorageWriteError


class JSONFileStorage(StorageBackend):
    """
    JSON file storage backend.

    Args:
        file_path: Path of the state file
    """

    def __init__(self, file_path: str = "moderation_state.json"):
        self.file_path = file_path
        self._lock = threading.Lock()

    def load_state(self) -> dict[str, Any] | None:
        with self._lock:
            try:
                with open(self.file_path, encoding="utf-8") as f:
                    raw_data = f.read()
            except FileNotFoundError:
                return None
            except PermissionError as e:
                raise StorageReadError(f"Permission denied: {self.file_path}") from e
            except OSError as e:
                raise StorageReadError(f"Failed to read {self.file_path}: {e}") from e

            if not raw_data.strip():
                return None
            try:
                return json.loads(raw_data)
            except json.JSONDecodeError as e:
                raise StorageReadError(f"Invalid JSON format: {e}") from e

    def save_state(self, state: dict[str, Any]) -> None:
        with self._lock:
            try:
                data = json.dumps(state, indent=2, ensure_ascii=False)
            except (TypeError, ValueError) as e:
                raise StorageWriteError(f"State is not JSON serializable: {e}") from e

            temp_path = f"{self.file_path}.tmp"
            try:
                with open(temp_path, "w", encoding="utf-8") as f:
                    f.write(data)
                os.replace(temp_path, self.file_path)
            except PermissionError as e:
                raise StorageWriteError(f"Permission denied: {self.file_path}") from e
            except OSError as e:
                raise StorageWriteError(f"OS error: {e}") from e

    def is_available(self) -> bool:
        directory = os.path.dirname(self.file_path) or "."
        return os.path.isdir(directory) and os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["file_path"] = self.file_path
        info["file_exists"] = os.path.exists(self.file_path)
        if info["file_exists"]:
            stat = os.stat(self.file_path)
            info["file_size_bytes"] = stat.st_size
            info["last_modified"] = stat.st_mtime
        return info

    def backup(self, backup_path: str | None = None) -> str:
        """
        Copy the state file aside.

        Returns:
            Path to the backup file

        Raises:
            StorageError: No state file, or the copy failed
        """
        if backup_path is None:
            backup_path = f"{self.file_path}.{datetime.now().strftime('%Y%m%d_%H%M%S')}.backup"
        with self._lock:
            if not os.path.exists(self.file_path):
                raise StorageError("No state file to back up")
            try:
                shutil.copy2(self.file_path, backup_path)
            except OSError as e:
                raise StorageError(f"Backup failed: {e}") from e
        return backup_path
