"""
Loop State Manager Tests
========================
Atomic save, backup recovery, corruption handling and version migration.
"""
import json
import os
from unittest.mock import patch

import pytest

from healer.core.config import StateConfig
from healer.core.errors import StateCorruptionError, StatePersistenceError
from healer.models.loop_state import ErrorCountSample, FixAttempt, LoopState, LoopStatus
from healer.state.history import LoopHistory
from healer.state.loop_state_manager import LoopStateManager, compute_integrity


@pytest.fixture
def manager(tmp_path):
    return LoopStateManager(StateConfig(state_dir="state", backup_count=2), base_dir=str(tmp_path))


def _state(iteration=1, status=LoopStatus.RUNNING):
    return LoopState(session_id="s-1", iteration=iteration, status=status, start_time=100.0, total_errors=4)


def _history():
    history = LoopHistory()
    history.error_history.append(ErrorCountSample(iteration=1, error_count=4))
    history.record_fix(FixAttempt(issue_key="k1", kind="runtime", success=True))
    return history


class TestSaveAndLoad:

    def test_round_trip(self, manager):
        manager.save_state(_state(iteration=2), _history())
        loaded = manager.load_state()
        assert loaded.loop_state.iteration == 2
        assert loaded.loop_state.status == LoopStatus.RUNNING
        assert loaded.history.error_counts == [4]
        assert loaded.history.fix_history[0].issue_key == "k1"
        assert loaded.from_backup is False

    def test_file_uses_camel_case_and_integrity(self, manager):
        path = manager.save_state(_state(), _history())
        with open(path, encoding="utf-8") as f:
            payload = json.load(f)
        assert payload["loopState"]["startTime"] == 100.0
        assert "errorHistory" in payload["history"]
        assert payload["metadata"]["integrity"] == compute_integrity(payload)

    def test_nothing_saved_returns_none(self, manager):
        assert manager.load_state() is None
        assert manager.has_valid_state() is False

    def test_backups_are_pruned(self, manager):
        for i in range(5):
            manager.save_state(_state(iteration=i), _history())
        assert len(manager.list_backups()) == 2
        assert manager.load_state().loop_state.iteration == 4


class TestCrashSafety:

    def test_failed_replace_keeps_previous_state(self, manager):
        manager.save_state(_state(iteration=1), _history())

        with patch("healer.state.loop_state_manager.os.replace", side_effect=OSError("disk gone")):
            with pytest.raises(StatePersistenceError):
                manager.save_state(_state(iteration=2), _history())

        assert not os.path.exists(manager.state_path + ".tmp")
        assert manager.load_state().loop_state.iteration == 1

    def test_stale_tmp_file_is_ignored(self, manager):
        manager.save_state(_state(iteration=3), _history())
        with open(manager.state_path + ".tmp", "w", encoding="utf-8") as f:
            f.write('{"loopState": {"iteration": 99')
        assert manager.load_state().loop_state.iteration == 3


class TestRecovery:

    def test_corrupt_state_falls_back_to_backup(self, manager):
        manager.save_state(_state(iteration=1), _history())
        manager.save_state(_state(iteration=2), _history())
        with open(manager.state_path, "w", encoding="utf-8") as f:
            f.write("{not json")

        loaded = manager.load_state()
        assert loaded.from_backup is True
        assert loaded.loop_state.iteration == 1

    def test_tampered_state_fails_integrity(self, manager):
        manager.save_state(_state(iteration=1), _history())
        with open(manager.state_path, encoding="utf-8") as f:
            payload = json.load(f)
        payload["loopState"]["iteration"] = 50
        with open(manager.state_path, "w", encoding="utf-8") as f:
            json.dump(payload, f)

        with pytest.raises(StateCorruptionError):
            manager.load_state()

    def test_everything_corrupt_raises(self, manager):
        manager.save_state(_state(iteration=1), _history())
        manager.save_state(_state(iteration=2), _history())
        for path in [manager.state_path] + manager.list_backups():
            with open(path, "w", encoding="utf-8") as f:
                f.write("garbage")

        with pytest.raises(StateCorruptionError):
            manager.load_state()
        info = manager.state_info()
        assert info["valid"] is False
        assert "error" in info

    def test_old_version_is_migrated(self, manager):
        os.makedirs(manager.state_dir, exist_ok=True)
        legacy = {
            "metadata": {"version": "1.0.0"},
            "loopState": {"iteration": 3, "status": "running", "startTime": 50.0},
        }
        with open(manager.state_path, "w", encoding="utf-8") as f:
            json.dump(legacy, f)

        loaded = manager.load_state()
        assert loaded.migrated_from == "1.0.0"
        assert loaded.metadata["version"] == "1.1.0"
        assert loaded.loop_state.iteration == 3
        assert list(loaded.history.iteration_history) == []

    def test_unknown_status_is_rejected(self, manager):
        os.makedirs(manager.state_dir, exist_ok=True)
        with open(manager.state_path, "w", encoding="utf-8") as f:
            json.dump({"metadata": {"version": "1.0.0"}, "loopState": {"iteration": 1, "status": "dancing"}}, f)
        with pytest.raises(StateCorruptionError):
            manager.load_state()


class TestHousekeeping:

    def test_clear_state_removes_everything(self, manager):
        manager.save_state(_state(iteration=1), _history())
        manager.save_state(_state(iteration=2), _history())
        assert manager.clear_state() == 2
        assert manager.load_state() is None

    def test_state_info_and_file_listing(self, manager):
        manager.save_state(_state(iteration=1), _history())
        manager.save_state(_state(iteration=2, status=LoopStatus.SUCCESS), _history())

        info = manager.state_info()
        assert info["valid"] is True
        assert info["backups"] == 1
        assert info["loopState"]["status"] == "success"

        files = manager.list_state_files()
        assert [f["backup"] for f in files] == [False, True]
        assert all(f["size"] > 0 for f in files)
