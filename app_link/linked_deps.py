"""Locally linked dependencies.

A linked dependency is a local package used in place of its published
counterpart.  Its files are sent under a reserved ``.linked_deps/<name>/``
prefix so the builder treats them as if they were vendored in the app.

Links are declared in two places:

* the ``links`` mapping of the project's ``.applink.json``;
* the ``yarn link`` registry, for dependencies named in the ``package.json``
  of one of the app's builder directories.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from types import MappingProxyType
from typing import Any, Mapping

from app_link.files import FileEntry, IgnoreRules, list_local_files, to_file_entries

logger = logging.getLogger(__name__)

LINKED_DEPS_MARKER = ".linked_deps"
PACKAGE_JSON = "package.json"


@dataclass(frozen=True)
class LinkConfig:
    """Dependency name -> absolute local path.  Replaced, never mutated."""
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_remote_path(self, abs_path: str | PurePath) -> str | None:
        """Map a file inside a linked dependency to its virtual path.

        Returns None when *abs_path* is not inside any linked dependency.
        """
        target = PurePath(abs_path)
        for name, dep_path in self.metadata.items():
            try:
                rel = target.relative_to(PurePath(dep_path))
            except ValueError:
                continue
            return "/".join((LINKED_DEPS_MARKER, name, *rel.parts))
        return None


def linked_deps_dirs(cfg: LinkConfig) -> list[Path]:
    """Return the root directory of every linked dependency."""
    return [Path(p) for p in cfg.metadata.values()]


def _read_package_json(path: Path) -> dict[str, Any] | None:
    try:
        with open(path / PACKAGE_JSON, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _verify(name: str, path: Path) -> Path | None:
    """Return the resolved package directory, or None (with a warning)."""
    try:
        resolved = path.resolve()
    except OSError as exc:
        logger.warning("Ignoring link %s (%s): %s", name, path, exc)
        return None
    if not resolved.is_dir():
        logger.warning("Ignoring link %s: %s is not a directory", name, path)
        return None
    if _read_package_json(resolved) is None:
        logger.warning(
            "Ignoring link %s: %s has no readable %s", name, path, PACKAGE_JSON
        )
        return None
    return resolved


def _builder_dependencies(root: Path) -> list[str]:
    """Names of the dependencies declared by the app's builder directories."""
    names: list[str] = []
    try:
        children = sorted(p for p in root.iterdir() if p.is_dir())
    except OSError:
        return names
    for child in children:
        if child.name.startswith(".") or child.name == "node_modules":
            continue
        pkg = _read_package_json(child)
        if not pkg:
            continue
        for key in ("dependencies", "devDependencies"):
            for dep in pkg.get(key) or {}:
                if dep not in names:
                    names.append(dep)
    return names


def discover_links(
    root: Path,
    declared: Mapping[str, str] | None = None,
    registry: Path | None = None,
) -> dict[str, Path]:
    """Collect candidate links; explicit declarations win over the registry."""
    candidates: dict[str, Path] = {}
    if registry is not None and registry.is_dir():
        for dep in _builder_dependencies(root):
            entry = registry / dep
            if entry.exists():
                candidates[dep] = entry
    for name, raw in (declared or {}).items():
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = root / path
        candidates[name] = path
    return candidates


def create_link_config(
    root: Path,
    declared: Mapping[str, str] | None = None,
    registry: Path | None = None,
) -> LinkConfig:
    """Build the :class:`LinkConfig` for *root*, dropping unusable links."""
    metadata = {}
    for name, path in discover_links(root, declared, registry).items():
        verified = _verify(name, path)
        if verified is not None:
            metadata[name] = str(verified)
    return LinkConfig(metadata)


def get_linked_files(cfg: LinkConfig) -> list[FileEntry]:
    """Read every linked dependency's files under their virtual paths.

    Each dependency honours the default ignore rules plus its own
    ``.linkignore``.
    """
    entries: list[FileEntry] = []
    for name, dep_path in cfg.metadata.items():
        root = Path(dep_path)
        try:
            paths = list_local_files(root, IgnoreRules.for_root(root))
        except OSError as exc:
            logger.warning("Could not list linked dependency %s: %s", name, exc)
            continue
        remote = {rel: f"{LINKED_DEPS_MARKER}/{name}/{rel}" for rel in paths}
        entries.extend(to_file_entries(root, paths, remote, linked=True))
    return entries
