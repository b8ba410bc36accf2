"""
Rollback Manager Tests
======================
Checkpoint creation, faithful restore (including deletion of files created
after the checkpoint), integrity checks, scoped restore and retention.
"""
import json
import os

import pytest

from healer.core.config import RollbackConfig
from healer.core.errors import CheckpointIntegrityError, CheckpointNotFoundError
from healer.services.rollback_manager import RollbackManager


def _write(root, rel, text):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def workspace(tmp_path):
    _write(tmp_path, "src/app.py", "value = 1\n")
    _write(tmp_path, "src/util.py", "def helper():\n    return 1\n")
    _write(tmp_path, "README.md", "# demo\n")
    return tmp_path


@pytest.fixture
def manager(workspace):
    return RollbackManager(RollbackConfig(checkpoint_dir=".checkpoints"), workspace=str(workspace))


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
class TestCreateCheckpoint:

    def test_metadata_records_every_tracked_file(self, manager):
        checkpoint_id = manager.create_checkpoint("before fixes", {"iteration": 1})
        assert checkpoint_id.startswith("checkpoint_")
        meta = manager.get_checkpoint(checkpoint_id)
        assert set(meta.files) == {"src/app.py", "src/util.py", "README.md"}
        assert meta.file_count == 3
        assert meta.metadata == {"iteration": 1}
        assert meta.integrity

    def test_metadata_is_camel_case_on_disk(self, manager):
        checkpoint_id = manager.create_checkpoint("camel")
        path = os.path.join(manager.checkpoint_root, checkpoint_id, "metadata.json")
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        assert "fileCount" in data
        assert "totalSize" in data

    def test_identical_content_is_stored_once(self, manager, workspace):
        _write(workspace, "copy.md", "# demo\n")
        manager.create_checkpoint("first")
        manager.create_checkpoint("second")
        objects = [name for _, _, names in os.walk(manager.objects_dir) for name in names]
        assert len(objects) == 3

    def test_excluded_patterns_and_paths_are_skipped(self, manager, workspace):
        _write(workspace, "node_modules/pkg/index.js", "module.exports = 1\n")
        _write(workspace, "debug.log", "noise\n")
        _write(workspace, ".state/loop-state.json", "{}\n")
        manager.exclude_path(str(workspace / ".state"))
        meta = manager.get_checkpoint(manager.create_checkpoint("filtered"))
        assert "node_modules/pkg/index.js" not in meta.files
        assert "debug.log" not in meta.files
        assert ".state/loop-state.json" not in meta.files

    def test_unknown_checkpoint(self, manager):
        with pytest.raises(CheckpointNotFoundError):
            manager.get_checkpoint("checkpoint_0_missing")


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------
class TestRollback:

    def test_restore_reverts_edits_and_deletes_new_files(self, manager, workspace):
        checkpoint_id = manager.create_checkpoint("clean")
        _write(workspace, "src/app.py", "value = 2\n")
        _write(workspace, "src/generated/extra.py", "x = 1\n")
        (workspace / "README.md").unlink()

        result = manager.rollback_to(checkpoint_id)

        assert result.success is True
        assert result.plan.files_to_overwrite == ["src/app.py"]
        assert result.plan.files_to_create == ["README.md"]
        assert result.plan.files_to_delete == ["src/generated/extra.py"]
        assert result.files_restored == 2
        assert result.files_deleted == 1
        assert (workspace / "src/app.py").read_text(encoding="utf-8") == "value = 1\n"
        assert (workspace / "README.md").exists()
        assert not (workspace / "src/generated").exists()
        assert result.verification.mismatches == []

    def test_restore_is_idempotent(self, manager, workspace):
        checkpoint_id = manager.create_checkpoint("clean")
        _write(workspace, "src/app.py", "value = 3\n")
        manager.rollback_to(checkpoint_id)
        before = manager.list_checkpoints()

        second = manager.rollback_to(checkpoint_id)

        assert second.plan.is_empty
        assert second.files_restored == 0
        assert second.safety_checkpoint_id is None
        assert len(manager.list_checkpoints()) == len(before)

    def test_safety_checkpoint_captures_pre_rollback_tree(self, manager, workspace):
        checkpoint_id = manager.create_checkpoint("clean")
        _write(workspace, "src/app.py", "value = 4\n")
        result = manager.rollback_to(checkpoint_id)
        assert result.safety_checkpoint_id is not None

        manager.rollback_to(result.safety_checkpoint_id)
        assert (workspace / "src/app.py").read_text(encoding="utf-8") == "value = 4\n"

    def test_dry_run_leaves_tree_untouched(self, manager, workspace):
        checkpoint_id = manager.create_checkpoint("clean")
        _write(workspace, "src/app.py", "value = 5\n")
        result = manager.rollback_to(checkpoint_id, dry_run=True)
        assert result.dry_run is True
        assert result.plan.files_to_overwrite == ["src/app.py"]
        assert (workspace / "src/app.py").read_text(encoding="utf-8") == "value = 5\n"

    def test_scoped_restore_touches_only_named_paths(self, manager, workspace):
        checkpoint_id = manager.create_checkpoint("clean")
        _write(workspace, "src/app.py", "value = 6\n")
        _write(workspace, "src/util.py", "def helper():\n    return 2\n")

        result = manager.rollback_to(checkpoint_id, paths=["./src/app.py"])

        assert result.success is True
        assert (workspace / "src/app.py").read_text(encoding="utf-8") == "value = 1\n"
        assert "return 2" in (workspace / "src/util.py").read_text(encoding="utf-8")

    def test_scoped_restore_removes_file_absent_from_checkpoint(self, manager, workspace):
        checkpoint_id = manager.create_checkpoint("clean")
        _write(workspace, "src/new.py", "x = 1\n")
        result = manager.rollback_to(checkpoint_id, paths=["src/new.py"])
        assert result.files_deleted == 1
        assert not (workspace / "src/new.py").exists()


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------
class TestIntegrity:

    def test_intact_checkpoint_has_no_problems(self, manager):
        checkpoint_id = manager.create_checkpoint("clean")
        assert manager.verify_checkpoint_integrity(checkpoint_id) == []

    def test_corrupt_object_blocks_rollback(self, manager, workspace):
        checkpoint_id = manager.create_checkpoint("clean")
        record = manager.get_checkpoint(checkpoint_id).files["src/app.py"]
        with open(manager._object_path(record.checksum), "w", encoding="utf-8") as f:
            f.write("tampered")

        problems = manager.verify_checkpoint_integrity(checkpoint_id)
        assert problems == ["corrupt object for src/app.py"]
        with pytest.raises(CheckpointIntegrityError):
            manager.rollback_to(checkpoint_id)

    def test_missing_object(self, manager):
        checkpoint_id = manager.create_checkpoint("clean")
        record = manager.get_checkpoint(checkpoint_id).files["README.md"]
        os.remove(manager._object_path(record.checksum))
        assert manager.verify_checkpoint_integrity(checkpoint_id) == ["missing object for README.md"]

    def test_edited_metadata_is_detected(self, manager):
        checkpoint_id = manager.create_checkpoint("clean")
        path = os.path.join(manager.checkpoint_root, checkpoint_id, "metadata.json")
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        data["description"] = "rewritten"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        assert "metadata integrity hash mismatch" in manager.verify_checkpoint_integrity(checkpoint_id)


# ---------------------------------------------------------------------------
# Listing, pinning, retention
# ---------------------------------------------------------------------------
class TestRetention:

    def test_list_is_newest_first(self, manager):
        first = manager.create_checkpoint("first")
        second = manager.create_checkpoint("second")
        ids = [s.id for s in manager.list_checkpoints()]
        assert ids == [second, first]

    def test_oldest_unpinned_checkpoints_are_removed(self, workspace):
        manager = RollbackManager(
            RollbackConfig(checkpoint_dir=".checkpoints", max_checkpoints=2), workspace=str(workspace)
        )
        oldest = manager.create_checkpoint("oldest")
        manager.pin(oldest)
        middle = manager.create_checkpoint("middle")
        newest = manager.create_checkpoint("newest")

        ids = {s.id for s in manager.list_checkpoints()}
        assert oldest in ids
        assert newest in ids
        assert middle not in ids

        manager.unpin(oldest)
        assert manager.is_pinned(oldest) is False
        latest = manager.create_checkpoint("latest")
        assert [s.id for s in manager.list_checkpoints()] == [latest, newest]
        assert manager.apply_retention() == []

    def test_pin_is_counted(self, manager):
        checkpoint_id = manager.create_checkpoint("pinned")
        manager.pin(checkpoint_id)
        manager.pin(checkpoint_id)
        manager.unpin(checkpoint_id)
        assert manager.is_pinned(checkpoint_id) is True
        assert manager.delete_checkpoint(checkpoint_id) is False
        manager.unpin(checkpoint_id)
        assert manager.delete_checkpoint(checkpoint_id) is True

    def test_delete_collects_unreferenced_objects(self, manager, workspace):
        first = manager.create_checkpoint("first")
        _write(workspace, "src/app.py", "value = 99\n")
        second = manager.create_checkpoint("second")

        manager.delete_checkpoint(first)

        objects = {name for _, _, names in os.walk(manager.objects_dir) for name in names}
        assert objects == {r.checksum for r in manager.get_checkpoint(second).files.values()}
