"""
Loop State Manager
==================
Crash-safe persistence of the loop state and its history.

Write protocol (``save_state``):
    1. Back up the current state file if it verifies (timestamped copy)
    2. Serialise payload + sha256 integrity hash to ``<file>.tmp``
    3. flush + fsync
    4. Re-read the temp file, re-parse it and re-check the hash
    5. ``os.replace`` over the real file (atomic on POSIX and Windows)
    6. Prune backups beyond ``backup_count`` (oldest first)

Read protocol (``load_state``):
    - Try the state file, then every backup newest-first.
    - A candidate is accepted only if it parses, its integrity hash matches
      and its structure validates. Older versions are migrated forward.
    - Stale ``.tmp`` files are never read.
    - Nothing on disk → ``None``. Files on disk but none valid →
      ``StateCorruptionError``.

Payload layout:
    {
      "metadata":  {"version", "timestamp", "savedAt", "integrity", ["migratedFrom"]},
      "loopState": {"iteration", "status", "startTime", "totalErrors", ...},
      "history":   {"errorHistory": [...], "fixHistory": [...], "iterationHistory": [...]}
    }
"""
import glob
import hashlib
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from healer.core.config import StateConfig
from healer.core.constants import STATE_VERSION
from healer.core.errors import StateCorruptionError, StatePersistenceError
from healer.models.loop_state import LoopState, LoopStatus
from healer.state.history import LoopHistory

logger = logging.getLogger(__name__)

_BACKUP_PREFIX = "loop-state-backup-"
_REQUIRED_STATE_KEYS = ("iteration", "status")
_VALID_STATUSES = {s.value for s in LoopStatus}


@dataclass
class LoadedState:
    """A verified state snapshot read back from disk."""
    loop_state: LoopState
    history: LoopHistory
    metadata: Dict[str, Any] = field(default_factory=dict)
    source: str = ""

    @property
    def from_backup(self) -> bool:
        return os.path.basename(self.source).startswith(_BACKUP_PREFIX)

    @property
    def migrated_from(self) -> Optional[str]:
        return self.metadata.get("migratedFrom")


def compute_integrity(payload: Dict[str, Any]) -> str:
    """sha256 over the canonical serialisation of the payload minus its hash."""
    metadata = {k: v for k, v in payload.get("metadata", {}).items() if k != "integrity"}
    canonical = {
        "metadata": metadata,
        "loopState": payload.get("loopState"),
        "history": payload.get("history"),
    }
    blob = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Version migration
# ---------------------------------------------------------------------------
def _migrate_1_0_0(payload: Dict[str, Any]) -> Dict[str, Any]:
    """1.0.0 had no session id and no per-iteration summaries."""
    payload.setdefault("loopState", {}).setdefault("sessionId", "")
    payload.setdefault("history", {}).setdefault("iterationHistory", [])
    return payload


_MIGRATIONS = {
    "1.0.0": ("1.1.0", _migrate_1_0_0),
}


def migrate_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade a payload to ``STATE_VERSION``, recording where it came from."""
    metadata = payload.setdefault("metadata", {})
    original = metadata.get("version") or "1.0.0"
    version = original
    while version != STATE_VERSION:
        step = _MIGRATIONS.get(version)
        if step is None:
            raise ValueError(f"No migration path from state version {version}")
        version, migrate = step
        payload = migrate(payload)
    if original != STATE_VERSION:
        payload["metadata"]["version"] = STATE_VERSION
        payload["metadata"]["migratedFrom"] = original
        logger.info("Migrated loop state from %s to %s", original, STATE_VERSION)
    return payload


def validate_structure(payload: Any) -> List[str]:
    """Return a list of structural problems (empty = valid)."""
    if not isinstance(payload, dict):
        return ["payload is not a JSON object"]
    problems: List[str] = []
    loop_state = payload.get("loopState")
    if not isinstance(loop_state, dict):
        return ["loopState missing"]
    for key in _REQUIRED_STATE_KEYS:
        if key not in loop_state:
            problems.append(f"loopState.{key} missing")
    if loop_state.get("status") not in _VALID_STATUSES:
        problems.append(f"invalid status {loop_state.get('status')!r}")
    if "history" in payload and not isinstance(payload["history"], dict):
        problems.append("history is not an object")
    return problems


class LoopStateManager:
    """
    Persists exactly one loop state file plus a bounded set of backups.
    """

    def __init__(self, config: Optional[StateConfig] = None, base_dir: str = ".") -> None:
        self.config = config or StateConfig()
        state_dir = self.config.state_dir
        if not os.path.isabs(state_dir):
            state_dir = os.path.join(base_dir, state_dir)
        self.state_dir = os.path.abspath(state_dir)
        self.state_path = os.path.join(self.state_dir, self.config.state_file)
        self._tmp_path = self.state_path + ".tmp"

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------
    def save_state(self, loop_state: LoopState, history: LoopHistory) -> str:
        """
        Atomically persist the loop state and history.

        Returns
        -------
        str
            Path of the written state file.

        Raises
        ------
        StatePersistenceError
            If the state could not be written and verified.
        """
        payload = self._build_payload(loop_state, history)
        try:
            os.makedirs(self.state_dir, exist_ok=True)
            self._backup_current()
            with open(self._tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            self._verify_file(self._tmp_path, payload["metadata"]["integrity"])
            os.replace(self._tmp_path, self.state_path)
        except (OSError, ValueError, TypeError) as exc:
            self._discard_tmp()
            raise StatePersistenceError(f"Failed to save loop state: {exc}") from exc

        self._prune_backups()
        logger.debug(
            "Saved loop state (iteration=%d, status=%s)",
            loop_state.iteration, loop_state.status.value,
        )
        return self.state_path

    def _build_payload(self, loop_state: LoopState, history: LoopHistory) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "metadata": {
                "version": STATE_VERSION,
                "timestamp": now.isoformat(),
                "savedAt": now.timestamp(),
            },
            "loopState": loop_state.model_dump(mode="json", by_alias=True),
            "history": history.to_dict(),
        }
        payload["metadata"]["integrity"] = compute_integrity(payload)
        return payload

    @staticmethod
    def _verify_file(path: str, expected_integrity: str) -> None:
        with open(path, "r", encoding="utf-8") as f:
            written = json.load(f)
        if compute_integrity(written) != expected_integrity:
            raise ValueError(f"Integrity mismatch after writing {path}")

    def _discard_tmp(self) -> None:
        try:
            if os.path.exists(self._tmp_path):
                os.remove(self._tmp_path)
        except OSError:
            logger.warning("Could not remove temp state file %s", self._tmp_path, exc_info=True)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------
    def _backup_current(self) -> Optional[str]:
        if not os.path.exists(self.state_path):
            return None
        try:
            self._read_verified(self.state_path)
        except (OSError, ValueError, ValidationError, StateCorruptionError) as exc:
            logger.warning("Not backing up invalid state file: %s", exc)
            return None

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = os.path.join(self.state_dir, f"{_BACKUP_PREFIX}{stamp}.json")
        suffix = 1
        while os.path.exists(backup_path):
            backup_path = os.path.join(self.state_dir, f"{_BACKUP_PREFIX}{stamp}-{suffix}.json")
            suffix += 1
        shutil.copy2(self.state_path, backup_path)
        return backup_path

    def list_backups(self) -> List[str]:
        """Backup paths, newest first."""
        pattern = os.path.join(self.state_dir, f"{_BACKUP_PREFIX}*.json")
        return sorted(glob.glob(pattern), reverse=True)

    def list_state_files(self) -> List[Dict[str, Any]]:
        """The state file and its backups with size and modification time."""
        files = []
        paths = ([self.state_path] if os.path.exists(self.state_path) else []) + self.list_backups()
        for path in paths:
            stat = os.stat(path)
            files.append({
                "path": path,
                "backup": path != self.state_path,
                "size": stat.st_size,
                "modified": stat.st_mtime,
            })
        return files

    def _prune_backups(self) -> None:
        for stale in self.list_backups()[self.config.backup_count:]:
            try:
                os.remove(stale)
            except OSError:
                logger.warning("Failed to prune backup %s", stale, exc_info=True)

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------
    def load_state(self) -> Optional[LoadedState]:
        """
        Load the newest valid state.

        Returns
        -------
        LoadedState | None
            ``None`` when no state has ever been saved.

        Raises
        ------
        StateCorruptionError
            When state files exist but none of them is valid.
        """
        candidates = []
        if os.path.exists(self.state_path):
            candidates.append(self.state_path)
        candidates.extend(self.list_backups())
        if not candidates:
            return None

        problems: List[str] = []
        for path in candidates:
            try:
                loaded = self._read_verified(path)
            except (OSError, ValueError, ValidationError, StateCorruptionError) as exc:
                logger.warning("Rejected state file %s: %s", path, exc)
                problems.append(f"{os.path.basename(path)}: {exc}")
                continue
            if path != self.state_path:
                logger.warning("Recovered loop state from backup %s", path)
            return loaded

        raise StateCorruptionError(
            "No valid loop state found: " + "; ".join(problems)
        )

    def _read_verified(self, path: str) -> LoadedState:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)

        problems = validate_structure(payload)
        if problems:
            raise StateCorruptionError(", ".join(problems))

        stored = payload.get("metadata", {}).get("integrity")
        if stored and compute_integrity(payload) != stored:
            raise StateCorruptionError("integrity hash mismatch")
        if not stored and payload.get("metadata", {}).get("version") == STATE_VERSION:
            raise StateCorruptionError("integrity hash missing")

        payload = migrate_payload(payload)
        limits = {
            "error_cap": self.config.error_history_limit,
            "fix_cap": self.config.fix_history_limit,
            "iteration_cap": self.config.iteration_history_limit,
        }
        return LoadedState(
            loop_state=LoopState.model_validate(payload["loopState"]),
            history=LoopHistory.from_dict(payload.get("history"), **limits),
            metadata=payload["metadata"],
            source=path,
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------
    def has_valid_state(self) -> bool:
        try:
            return self.load_state() is not None
        except StateCorruptionError:
            return False

    def clear_state(self) -> int:
        """Delete the state file, its backups and any stale temp file."""
        removed = 0
        for path in [self.state_path, self._tmp_path] + self.list_backups():
            if os.path.exists(path):
                os.remove(path)
                removed += 1
        logger.info("Cleared %d loop state file(s) from %s", removed, self.state_dir)
        return removed

    def state_info(self) -> Dict[str, Any]:
        """Describe what is on disk without raising."""
        info: Dict[str, Any] = {
            "exists": os.path.exists(self.state_path),
            "path": self.state_path,
            "backups": len(self.list_backups()),
            "valid": False,
        }
        if info["exists"]:
            stat = os.stat(self.state_path)
            info["size"] = stat.st_size
            info["modified"] = stat.st_mtime
        try:
            loaded = self.load_state()
        except StateCorruptionError as exc:
            info["error"] = str(exc)
            return info
        if loaded is not None:
            info.update({
                "valid": True,
                "version": loaded.metadata.get("version"),
                "savedAt": loaded.metadata.get("savedAt"),
                "fromBackup": loaded.from_backup,
                "loopState": loaded.loop_state.model_dump(mode="json", by_alias=True),
            })
        return info
