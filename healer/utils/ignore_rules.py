"""
Ignore Rules
============
Rules for leaving generated files, dependencies and the loop's own
bookkeeping out of checkpoints and validation sandboxes.

A pattern matches a workspace-relative path (forward slashes) when it
matches the whole path or any single component of it, e.g.:
    - ".git"          → .git/ and everything below it
    - "node_modules"  → node_modules/ at any depth
    - "*.log"         → any log file
"""
import fnmatch
import os
from typing import Callable, Iterable, List


def is_ignored(rel_path: str, patterns: Iterable[str]) -> bool:
    rel_path = rel_path.replace("\\", "/")
    parts = rel_path.split("/")
    for pattern in patterns:
        if fnmatch.fnmatch(rel_path, pattern):
            return True
        if any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def build_ignore(patterns: Iterable[str]) -> Callable[[str, List[str]], List[str]]:
    """Adapter for ``shutil.copytree(ignore=...)``."""
    patterns = list(patterns)

    def _ignore(directory: str, names: List[str]) -> List[str]:
        return [n for n in names if is_ignored(n, patterns)]

    return _ignore


def relative_to(path: str, root: str) -> str:
    """Workspace-relative path with forward slashes, or "" if outside ``root``."""
    path = os.path.abspath(path)
    root = os.path.abspath(root)
    if os.path.commonpath([path, root]) != root:
        return ""
    return os.path.relpath(path, root).replace(os.sep, "/")
