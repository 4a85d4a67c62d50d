"""Project file enumeration and ignore rules.

Walks the project tree with ``os.walk``, pruning ignored directories in
place, and turns the surviving paths into the snapshot sent on a full link.
"""

from __future__ import annotations

import base64
import fnmatch
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

IGNORE_FILE = ".linkignore"

# Dependency-manager directories, excluded whatever the other rules say
FORCED_DIR_NAMES = ("node_modules",)

DEFAULT_IGNORE_PATTERNS = (
    ".git/",
    ".DS_Store",
    "*.swp",
    "*~",
    ".#*",
)


def normalize_path(path: str) -> str:
    """Return *path* with forward slashes, whatever the host separator."""
    return path.replace(os.sep, "/").replace("\\", "/")


def read_base64(path: Path) -> str:
    """Return the base64 text of the bytes of *path*."""
    return base64.b64encode(path.read_bytes()).decode("ascii")


def read_ignore_file(path: Path) -> list[str]:
    """Read glob patterns from an ignore file (``#`` starts a comment)."""
    if not path.is_file():
        return []
    patterns = []
    for raw in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        patterns.append(line)
    return patterns


class IgnoreRules:
    """fnmatch-style ignore patterns evaluated against relative paths.

    A pattern containing ``/`` is matched against the whole relative path,
    any other pattern against each path segment.  A trailing ``/`` limits a
    pattern to directories.
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self._dir_globs: list[str] = []
        self._path_globs: list[str] = []
        self._name_globs: list[str] = []
        for pat in patterns:
            self.add(pat)

    @classmethod
    def for_root(cls, root: Path, extra: Iterable[str] = ()) -> IgnoreRules:
        """Defaults + the root's ``.linkignore`` + *extra* patterns."""
        return cls([*DEFAULT_IGNORE_PATTERNS, *read_ignore_file(root / IGNORE_FILE), *extra])

    def add(self, pattern: str) -> None:
        pat = normalize_path(pattern.strip()).lstrip("/")
        if not pat:
            return
        if pat.endswith("/"):
            self._dir_globs.append(pat.rstrip("/"))
        elif "/" in pat:
            self._path_globs.append(pat)
        else:
            self._name_globs.append(pat)

    def _matches(self, rel: str, is_dir: bool) -> bool:
        name = rel.rsplit("/", 1)[-1]
        if is_dir and name in FORCED_DIR_NAMES:
            return True
        for g in self._name_globs:
            if fnmatch.fnmatch(name, g):
                return True
        for g in self._path_globs:
            if fnmatch.fnmatch(rel, g):
                return True
        if is_dir:
            for g in self._dir_globs:
                if fnmatch.fnmatch(rel, g) if "/" in g else fnmatch.fnmatch(name, g):
                    return True
        return False

    def ignores_dir(self, rel: str) -> bool:
        """Return True if the directory *rel* should be pruned."""
        return self._matches(normalize_path(rel).strip("/"), is_dir=True)

    def ignores_file(self, rel: str) -> bool:
        """Return True if the file *rel* should be skipped."""
        return self._matches(normalize_path(rel).strip("/"), is_dir=False)

    def ignores(self, rel: str) -> bool:
        """Return True if *rel*, or any directory above it, is ignored."""
        rel = normalize_path(rel).strip("/")
        parts = [p for p in rel.split("/") if p]
        for i in range(1, len(parts)):
            if self.ignores_dir("/".join(parts[:i])):
                return True
        return bool(parts) and self.ignores_file(rel)


def iter_files(root: Path, rules: IgnoreRules) -> Iterable[str]:
    """Yield relative forward-slash paths of the files under *root*."""
    root_abs = os.path.abspath(str(root))
    if not os.path.isdir(root_abs):
        raise FileNotFoundError(f"Project root does not exist: {root}")

    def _raise(err: OSError) -> None:
        raise err

    for dirpath, dirnames, filenames in os.walk(root_abs, onerror=_raise):
        rel_dir = os.path.relpath(dirpath, root_abs)
        rel_dir = "" if rel_dir == "." else normalize_path(rel_dir) + "/"
        dirnames[:] = [d for d in dirnames if not rules.ignores_dir(rel_dir + d)]
        for f in filenames:
            rel = rel_dir + f
            if rules.ignores_file(rel):
                continue
            if not os.path.isfile(os.path.join(dirpath, f)):
                continue
            yield rel


def list_local_files(root: Path, rules: IgnoreRules | None = None) -> list[str]:
    """Return the sorted relative paths of all non-ignored files in *root*."""
    if rules is None:
        rules = IgnoreRules.for_root(root)
    return sorted(iter_files(root, rules))


@dataclass
class FileEntry:
    """One file of a full-link snapshot."""
    path: str
    content: str  # base64
    is_linked_dependency: bool = False

    def to_payload(self) -> dict[str, str]:
        return {"path": self.path, "content": self.content}


def to_file_entries(
    root: Path,
    paths: Iterable[str],
    remote_paths: dict[str, str] | None = None,
    linked: bool = False,
) -> list[FileEntry]:
    """Read *paths* (relative to *root*) into snapshot entries.

    Files that vanish or become unreadable between enumeration and read
    are skipped with a warning.
    """
    entries = []
    for rel in paths:
        try:
            content = read_base64(root / rel)
        except OSError as exc:
            logger.warning("Skipping %s: %s", rel, exc)
            continue
        remote = remote_paths.get(rel, rel) if remote_paths else rel
        entries.append(FileEntry(remote, content, is_linked_dependency=linked))
    return entries
