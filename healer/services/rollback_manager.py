"""
Rollback Manager
================
Content-addressable checkpoints of the workspace and faithful restore.

Storage layout (under ``checkpoint_dir``):
    objects/<aa>/<sha256>           — file bodies, stored once per content
    <checkpoint_id>/metadata.json   — file map + integrity hash

Checkpoint metadata (camelCase on disk):
    {id, description, timestamp, fileCount, totalSize, integrity,
     files: {relativePath: {size, mtime, checksum}}, metadata}

Restore (``rollback_to``):
    1. Verify the checkpoint's integrity (metadata hash + every object)
    2. Plan: files to overwrite, files to create, extraneous files to delete
    3. Take a safety checkpoint of the current tree (only if the plan does something)
    4. Execute the plan
    5. Re-hash every restored file and report mismatches

A restore is never purely additive: files created after the checkpoint are
deleted. Restoring the same checkpoint twice leaves the tree unchanged the
second time.

Checkpoint and restore run under ``tree_lock`` (re-entrant). Fix
application takes the same lock, so a fix can never land mid-rollback.
"""
import hashlib
import json
import logging
import os
import secrets
import shutil
import threading
import time
from collections import Counter
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from pydantic import ValidationError

from healer.core.config import RollbackConfig
from healer.core.errors import CheckpointIntegrityError, CheckpointNotFoundError
from healer.models.checkpoint import (
    CheckpointMetadata,
    CheckpointSummary,
    FileRecord,
    RestorePlan,
    RollbackResult,
    RollbackVerification,
)
from healer.utils.fingerprint import sha256_file
from healer.utils.ignore_rules import is_ignored

logger = logging.getLogger(__name__)

_OBJECTS_DIR = "objects"
_METADATA_FILE = "metadata.json"
_CHUNK = 65536


def _normalize_rel(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def compute_checkpoint_integrity(meta: CheckpointMetadata) -> str:
    payload = {
        "id": meta.id,
        "description": meta.description,
        "timestamp": meta.timestamp,
        "fileCount": meta.file_count,
        "totalSize": meta.total_size,
        "files": {
            path: record.model_dump(by_alias=True) for path, record in sorted(meta.files.items())
        },
    }
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class RollbackManager:

    def __init__(
        self,
        config: Optional[RollbackConfig] = None,
        workspace: str = ".",
        extra_excludes: Iterable[str] = (),
    ) -> None:
        self.config = config or RollbackConfig()
        self.workspace = os.path.abspath(workspace)
        root = self.config.checkpoint_dir
        self.checkpoint_root = os.path.abspath(
            root if os.path.isabs(root) else os.path.join(self.workspace, root)
        )
        self.objects_dir = os.path.join(self.checkpoint_root, _OBJECTS_DIR)
        self.exclude_patterns = list(self.config.exclude_patterns) + list(extra_excludes)
        self.tree_lock = threading.RLock()
        self._pinned: Counter = Counter()
        self._excluded_abs = {self.checkpoint_root}

    # ------------------------------------------------------------------
    # Workspace scanning
    # ------------------------------------------------------------------
    def _is_excluded(self, rel_path: str) -> bool:
        return is_ignored(rel_path, self.exclude_patterns)

    def exclude_path(self, abs_path: str) -> None:
        """Never snapshot or delete the file or directory at ``abs_path``."""
        self._excluded_abs.add(os.path.abspath(abs_path))

    def _walk(self) -> Iterator[str]:
        """Yield workspace-relative paths (forward slashes) of tracked files."""
        for dirpath, dirnames, filenames in os.walk(self.workspace):
            kept = []
            for d in dirnames:
                abs_dir = os.path.join(dirpath, d)
                rel_dir = os.path.relpath(abs_dir, self.workspace).replace(os.sep, "/")
                if abs_dir in self._excluded_abs or self._is_excluded(rel_dir):
                    continue
                if os.path.islink(abs_dir):
                    continue
                kept.append(d)
            dirnames[:] = sorted(kept)
            for name in sorted(filenames):
                abs_file = os.path.join(dirpath, name)
                if os.path.islink(abs_file) or abs_file in self._excluded_abs:
                    continue
                rel = os.path.relpath(abs_file, self.workspace).replace(os.sep, "/")
                if not self._is_excluded(rel):
                    yield rel

    def _abs(self, rel_path: str) -> str:
        path = os.path.normpath(os.path.join(self.workspace, rel_path))
        if os.path.commonpath([path, self.workspace]) != self.workspace:
            raise ValueError(f"Path escapes workspace: {rel_path}")
        return path

    # ------------------------------------------------------------------
    # Object store
    # ------------------------------------------------------------------
    def _object_path(self, checksum: str) -> str:
        return os.path.join(self.objects_dir, checksum[:2], checksum)

    def _store_object(self, abs_path: str) -> Tuple[str, int]:
        """Copy a file into the object store, hashing while copying."""
        os.makedirs(self.objects_dir, exist_ok=True)
        digest = hashlib.sha256()
        size = 0
        tmp = os.path.join(self.objects_dir, f".incoming-{secrets.token_hex(8)}")
        try:
            with open(abs_path, "rb") as src, open(tmp, "wb") as dst:
                for chunk in iter(lambda: src.read(_CHUNK), b""):
                    digest.update(chunk)
                    dst.write(chunk)
                    size += len(chunk)
            checksum = digest.hexdigest()
            final = self._object_path(checksum)
            if os.path.exists(final):
                os.remove(tmp)
            else:
                os.makedirs(os.path.dirname(final), exist_ok=True)
                os.replace(tmp, final)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        return checksum, size

    # ------------------------------------------------------------------
    # Checkpoint creation
    # ------------------------------------------------------------------
    def create_checkpoint(self, description: str = "", metadata: Optional[dict] = None) -> str:
        """
        Snapshot the workspace.

        Parameters
        ----------
        description : str
            Why the checkpoint was taken.
        metadata : dict | None
            Free-form extra data stored alongside.

        Returns
        -------
        str
            The new checkpoint id (``checkpoint_<ms>_<hex>``).
        """
        started = time.monotonic()
        with self.tree_lock:
            checkpoint_id = f"checkpoint_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
            files: Dict[str, FileRecord] = {}
            total = 0
            for rel in self._walk():
                abs_path = self._abs(rel)
                try:
                    mtime = os.stat(abs_path).st_mtime
                    checksum, size = self._store_object(abs_path)
                except FileNotFoundError:
                    continue
                files[rel] = FileRecord(size=size, mtime=mtime, checksum=checksum)
                total += size

            meta = CheckpointMetadata(
                id=checkpoint_id,
                description=description,
                timestamp=time.time(),
                file_count=len(files),
                total_size=total,
                files=files,
                metadata=metadata or {},
            )
            meta.integrity = compute_checkpoint_integrity(meta)
            self._write_metadata(meta)
            self._apply_retention(protect={checkpoint_id})

        logger.info(
            "Created checkpoint %s (%d files, %d bytes, %.2fs): %s",
            checkpoint_id, len(files), total, time.monotonic() - started, description,
        )
        return checkpoint_id

    def _checkpoint_dir(self, checkpoint_id: str) -> str:
        if os.sep in checkpoint_id or "/" in checkpoint_id or checkpoint_id.startswith("."):
            raise CheckpointNotFoundError(checkpoint_id)
        return os.path.join(self.checkpoint_root, checkpoint_id)

    def _write_metadata(self, meta: CheckpointMetadata) -> None:
        directory = self._checkpoint_dir(meta.id)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, _METADATA_FILE)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(meta.model_dump(mode="json", by_alias=True), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def get_checkpoint(self, checkpoint_id: str) -> CheckpointMetadata:
        path = os.path.join(self._checkpoint_dir(checkpoint_id), _METADATA_FILE)
        if not os.path.exists(path):
            raise CheckpointNotFoundError(checkpoint_id)
        with open(path, "r", encoding="utf-8") as f:
            return CheckpointMetadata.model_validate(json.load(f))

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------
    def verify_checkpoint_integrity(self, checkpoint_id: str) -> List[str]:
        """Return integrity problems for a checkpoint (empty list = intact)."""
        try:
            meta = self.get_checkpoint(checkpoint_id)
        except (OSError, ValueError, ValidationError) as exc:
            return [f"metadata unreadable: {exc}"]

        problems: List[str] = []
        if compute_checkpoint_integrity(meta) != meta.integrity:
            problems.append("metadata integrity hash mismatch")
        for rel, record in meta.files.items():
            obj = self._object_path(record.checksum)
            if not os.path.exists(obj):
                problems.append(f"missing object for {rel}")
            elif sha256_file(obj) != record.checksum:
                problems.append(f"corrupt object for {rel}")
        return problems

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def _scope(self, paths: Optional[Iterable[str]]) -> Optional[Set[str]]:
        if paths is None:
            return None
        return {_normalize_rel(p) for p in paths}

    def plan_restore(self, meta: CheckpointMetadata, paths: Optional[Iterable[str]] = None) -> RestorePlan:
        scope = self._scope(paths)
        wanted = {
            rel: rec for rel, rec in meta.files.items() if scope is None or rel in scope
        }
        current = [rel for rel in self._walk() if scope is None or rel in scope]
        current_set = set(current)

        plan = RestorePlan()
        for rel, record in sorted(wanted.items()):
            if rel not in current_set:
                plan.files_to_create.append(rel)
                continue
            abs_path = self._abs(rel)
            if os.path.getsize(abs_path) != record.size or sha256_file(abs_path) != record.checksum:
                plan.files_to_overwrite.append(rel)
        plan.files_to_delete = sorted(current_set - set(wanted))
        return plan

    def rollback_to(
        self,
        checkpoint_id: str,
        dry_run: bool = False,
        verify_integrity: bool = True,
        force: bool = False,
        paths: Optional[Iterable[str]] = None,
        create_safety_checkpoint: bool = True,
    ) -> RollbackResult:
        """
        Restore the workspace (or just ``paths``) to a checkpoint.

        Parameters
        ----------
        checkpoint_id : str
            Checkpoint to restore.
        dry_run : bool
            Only compute and return the plan.
        verify_integrity : bool
            Check metadata hash and objects before touching the tree.
        force : bool
            Proceed even if the integrity check fails.
        paths : Iterable[str] | None
            Restrict the restore to these workspace-relative paths.
        create_safety_checkpoint : bool
            Snapshot the pre-rollback tree first.

        Raises
        ------
        CheckpointNotFoundError, CheckpointIntegrityError
        """
        started = time.monotonic()
        with self.tree_lock:
            meta = self.get_checkpoint(checkpoint_id)
            if verify_integrity:
                problems = self.verify_checkpoint_integrity(checkpoint_id)
                if problems and not force:
                    raise CheckpointIntegrityError(checkpoint_id, problems)
                if problems:
                    logger.warning("Forcing rollback to damaged checkpoint %s: %s",
                                   checkpoint_id, problems)

            plan = self.plan_restore(meta, paths)
            result = RollbackResult(success=True, checkpoint_id=checkpoint_id,
                                    dry_run=dry_run, plan=plan)
            if dry_run:
                return result

            if plan.is_empty:
                logger.info("Rollback to %s: workspace already matches", checkpoint_id)
            else:
                if create_safety_checkpoint:
                    self.pin(checkpoint_id)
                    try:
                        result.safety_checkpoint_id = self.create_checkpoint(
                            f"Pre-rollback safety checkpoint (target {checkpoint_id})",
                            {"type": "safety", "rollback_target": checkpoint_id},
                        )
                    finally:
                        self.unpin(checkpoint_id)
                result.files_restored, result.files_deleted = self._execute(meta, plan)

            result.verification = self._verify_restore(meta, paths)
            result.success = result.verification.success

        result.duration_seconds = round(time.monotonic() - started, 3)
        log = logger.info if result.success else logger.error
        log(
            "Rollback to %s %s (restored=%d, deleted=%d)",
            checkpoint_id, "succeeded" if result.success else "FAILED verification",
            result.files_restored, result.files_deleted,
        )
        return result

    def _execute(self, meta: CheckpointMetadata, plan: RestorePlan) -> Tuple[int, int]:
        restored = 0
        for rel in plan.files_to_overwrite + plan.files_to_create:
            record = meta.files[rel]
            target = self._abs(rel)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            tmp = f"{target}.restore-{secrets.token_hex(4)}"
            shutil.copyfile(self._object_path(record.checksum), tmp)
            os.replace(tmp, target)
            os.utime(target, (record.mtime, record.mtime))
            restored += 1

        deleted = 0
        for rel in plan.files_to_delete:
            target = self._abs(rel)
            if os.path.exists(target):
                os.remove(target)
                deleted += 1
                self._prune_empty_dirs(os.path.dirname(target))
        return restored, deleted

    def _prune_empty_dirs(self, directory: str) -> None:
        while directory != self.workspace and directory.startswith(self.workspace):
            try:
                os.rmdir(directory)
            except OSError:
                return
            directory = os.path.dirname(directory)

    def _verify_restore(self, meta: CheckpointMetadata, paths: Optional[Iterable[str]]) -> RollbackVerification:
        scope = self._scope(paths)
        verification = RollbackVerification(success=True)
        for rel, record in meta.files.items():
            if scope is not None and rel not in scope:
                continue
            abs_path = self._abs(rel)
            if not os.path.exists(abs_path) or sha256_file(abs_path) != record.checksum:
                verification.mismatches.append(rel)
            else:
                verification.files_verified += 1
        current = {rel for rel in self._walk() if scope is None or rel in scope}
        verification.unexpected_files = sorted(current - set(meta.files))
        verification.success = not verification.mismatches and not verification.unexpected_files
        return verification

    # ------------------------------------------------------------------
    # Listing, pinning, retention
    # ------------------------------------------------------------------
    def list_checkpoints(self) -> List[CheckpointSummary]:
        """All readable checkpoints, newest first."""
        if not os.path.isdir(self.checkpoint_root):
            return []
        summaries: List[CheckpointSummary] = []
        for name in os.listdir(self.checkpoint_root):
            if not name.startswith("checkpoint_"):
                continue
            try:
                meta = self.get_checkpoint(name)
            except (OSError, ValueError, ValidationError, CheckpointNotFoundError) as exc:
                logger.warning("Skipping unreadable checkpoint %s: %s", name, exc)
                continue
            summaries.append(CheckpointSummary(
                id=meta.id,
                description=meta.description,
                timestamp=meta.timestamp,
                file_count=meta.file_count,
                total_size=meta.total_size,
                pinned=self.is_pinned(meta.id),
            ))
        summaries.sort(key=lambda s: (s.timestamp, s.id), reverse=True)
        return summaries

    def pin(self, checkpoint_id: str) -> None:
        with self.tree_lock:
            self._pinned[checkpoint_id] += 1

    def unpin(self, checkpoint_id: str) -> None:
        with self.tree_lock:
            if self._pinned[checkpoint_id] <= 1:
                self._pinned.pop(checkpoint_id, None)
            else:
                self._pinned[checkpoint_id] -= 1

    def is_pinned(self, checkpoint_id: str) -> bool:
        return self._pinned.get(checkpoint_id, 0) > 0

    def delete_checkpoint(self, checkpoint_id: str, force: bool = False) -> bool:
        with self.tree_lock:
            if self.is_pinned(checkpoint_id) and not force:
                logger.warning("Refusing to delete pinned checkpoint %s", checkpoint_id)
                return False
            directory = self._checkpoint_dir(checkpoint_id)
            if not os.path.isdir(directory):
                return False
            shutil.rmtree(directory)
            self._collect_garbage()
        logger.info("Deleted checkpoint %s", checkpoint_id)
        return True

    def apply_retention(self) -> List[str]:
        with self.tree_lock:
            return self._apply_retention(protect=set())

    def _apply_retention(self, protect: Set[str]) -> List[str]:
        checkpoints = self.list_checkpoints()
        excess = len(checkpoints) - self.config.max_checkpoints
        if excess <= 0:
            return []
        deleted: List[str] = []
        for summary in reversed(checkpoints):
            if len(deleted) >= excess:
                break
            if summary.pinned or summary.id in protect:
                continue
            shutil.rmtree(self._checkpoint_dir(summary.id), ignore_errors=True)
            deleted.append(summary.id)
        if deleted:
            self._collect_garbage()
            logger.info("Retention removed %d checkpoint(s)", len(deleted))
        return deleted

    def _collect_garbage(self) -> int:
        referenced: Set[str] = set()
        for summary in self.list_checkpoints():
            referenced.update(r.checksum for r in self.get_checkpoint(summary.id).files.values())
        removed = 0
        if not os.path.isdir(self.objects_dir):
            return 0
        for dirpath, _, filenames in os.walk(self.objects_dir):
            for name in filenames:
                if name.startswith(".incoming-"):
                    continue
                if name not in referenced:
                    os.remove(os.path.join(dirpath, name))
                    removed += 1
        return removed
