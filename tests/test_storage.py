"""
Tests for storage backends.
"""

import json
import os
import threading

import pytest

from storage import StorageError, get_storage_backend
from storage.base import StorageReadError
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage

SAMPLE_STATE = {
    "moderation": {
        "version": 3,
        "protocol": {"paused": False, "emergency_admins": ["admin"]},
        "registry": {
            "sequence": 1,
            "records": [
                {
                    "content_id": "CONTENT-ABC",
                    "submitter": "alice",
                    "fingerprint": "a" * 64,
                    "category": "text",
                    "created_at": 1700000000,
                    "state": "voting",
                }
            ],
        },
        "ledger": {"accounts": [{"owner": "alice", "total": 100, "locked": 40}]},
    },
    "identities": {"keys": {}},
}


class TestMemoryStorage:
    """Tests for MemoryStorage."""

    def test_empty_load(self):
        assert MemoryStorage().load_state() is None

    def test_save_and_load(self):
        storage = MemoryStorage()
        storage.save_state(SAMPLE_STATE)

        assert storage.load_state() == SAMPLE_STATE
        assert storage.save_count == 1

    def test_isolation_from_caller_mutation(self):
        storage = MemoryStorage()
        state = json.loads(json.dumps(SAMPLE_STATE))
        storage.save_state(state)
        state["moderation"]["version"] = 99

        loaded = storage.load_state()
        loaded["identities"]["keys"]["x"] = "y"

        assert storage.load_state() == SAMPLE_STATE

    def test_clear(self):
        storage = MemoryStorage()
        storage.save_state(SAMPLE_STATE)
        storage.clear()

        assert storage.load_state() is None
        assert storage.get_info()["has_data"] is False

    def test_concurrent_saves(self):
        storage = MemoryStorage()
        threads = [threading.Thread(target=storage.save_state, args=({"n": i},)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert storage.save_count == 20


class TestJSONFileStorage:
    """Tests for JSONFileStorage."""

    @pytest.fixture
    def storage(self, tmp_path):
        return JSONFileStorage(str(tmp_path / "state.json"))

    def test_missing_file_loads_none(self, storage):
        assert storage.load_state() is None

    def test_save_and_load(self, storage):
        storage.save_state(SAMPLE_STATE)

        assert storage.load_state() == SAMPLE_STATE
        assert not os.path.exists(storage.file_path + ".tmp")

    def test_overwrite(self, storage):
        storage.save_state(SAMPLE_STATE)
        storage.save_state({"moderation": {}, "identities": {}})

        assert storage.load_state() == {"moderation": {}, "identities": {}}

    def test_empty_file_loads_none(self, storage):
        with open(storage.file_path, "w") as f:
            f.write("   ")

        assert storage.load_state() is None

    def test_corrupt_file(self, storage):
        with open(storage.file_path, "w") as f:
            f.write("{not json")

        with pytest.raises(StorageReadError):
            storage.load_state()

    def test_unserializable_state(self, storage):
        with pytest.raises(StorageError):
            storage.save_state({"bad": object()})

    def test_info(self, storage):
        storage.save_state(SAMPLE_STATE)
        info = storage.get_info()

        assert info["backend_type"] == "JSONFileStorage"
        assert info["file_exists"] is True
        assert info["file_size_bytes"] > 0
        assert info["available"] is True

    def test_backup(self, storage, tmp_path):
        storage.save_state(SAMPLE_STATE)
        backup_path = storage.backup(str(tmp_path / "state.backup"))

        with open(backup_path) as f:
            assert json.load(f) == SAMPLE_STATE

    def test_backup_without_state(self, storage):
        with pytest.raises(StorageError):
            storage.backup()

    def test_context_manager(self, tmp_path):
        with JSONFileStorage(str(tmp_path / "ctx.json")) as storage:
            storage.save_state(SAMPLE_STATE)
        assert JSONFileStorage(str(tmp_path / "ctx.json")).load_state() == SAMPLE_STATE


class TestGetStorageBackend:
    """Tests for the environment factory."""

    def test_memory(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        assert isinstance(get_storage_backend(), MemoryStorage)

    def test_json_with_path(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STORAGE_BACKEND", "JSON")
        monkeypatch.setenv("MODERATION_STATE_FILE", str(tmp_path / "x.json"))

        storage = get_storage_backend()
        assert isinstance(storage, JSONFileStorage)
        assert storage.file_path == str(tmp_path / "x.json")

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "postgres")

        with pytest.raises(StorageError):
            get_storage_backend()
