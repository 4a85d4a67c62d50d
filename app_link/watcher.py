"""File system watcher for App Link.

Uses the watchdog library to monitor the project root and every linked
dependency root.  Additions and modifications are held back until the
file's size has been stable for a short threshold (editors write files in
several steps), then reported as :class:`WatchEvent` values.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from app_link.errors import WatcherError
from app_link.files import IgnoreRules, normalize_path

logger = logging.getLogger(__name__)

ADD = "add"
CHANGE = "change"
UNLINK = "unlink"


@dataclass(frozen=True)
class WatchEvent:
    """A filesystem event: kind, absolute path and size at emit time."""
    kind: str
    path: str
    size: int = 0


class _StabilityTracker:
    """Holds add/change events until the file size stops changing."""

    def __init__(self, threshold: float, on_stable: Callable[[WatchEvent], None]):
        self._threshold = threshold
        self._on_stable = on_stable
        # path -> (kind, last_seen, last_size)
        self._pending = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def threshold(self) -> float:
        return self._threshold

    def start(self) -> None:
        if self._threshold <= 0:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._poll, daemon=True, name="StabilityTracker"
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def track(self, kind: str, path: str) -> None:
        """Register or refresh a file awaiting stability."""
        try:
            size = os.path.getsize(path)
        except OSError:
            return
        if self._threshold <= 0:
            self._emit(WatchEvent(kind, path, size))
            return
        with self._lock:
            previous = self._pending.get(path)
            # An add followed by writes is still reported as an add
            if previous is not None and previous[0] == ADD:
                kind = ADD
            self._pending[path] = (kind, time.monotonic(), size)
        logger.debug("Tracking %s (%s, size=%d)", path, kind, size)

    def cancel(self, path: str) -> None:
        """Forget a pending file (it was deleted)."""
        with self._lock:
            self._pending.pop(path, None)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def check(self, now: float | None = None) -> list[WatchEvent]:
        """Collect the files that have stabilised since they were tracked."""
        stable: list[WatchEvent] = []
        if now is None:
            now = time.monotonic()
        with self._lock:
            for path, (kind, last_seen, last_size) in list(self._pending.items()):
                try:
                    current_size = os.path.getsize(path)
                except OSError:
                    # File vanished; its unlink event reports it
                    del self._pending[path]
                    continue
                if current_size != last_size:
                    self._pending[path] = (kind, now, current_size)
                elif now - last_seen >= self._threshold:
                    stable.append(WatchEvent(kind, path, current_size))
            for ev in stable:
                del self._pending[ev.path]
        return stable

    def _emit(self, event: WatchEvent) -> None:
        try:
            self._on_stable(event)
        except Exception:
            logger.exception("Error handling watch event for %s", event.path)

    def _poll(self) -> None:
        interval = max(0.02, self._threshold / 2)
        while not self._stop.is_set():
            for ev in self.check():
                self._emit(ev)
            self._stop.wait(timeout=interval)


class ProjectEventHandler(FileSystemEventHandler):
    """Watchdog handler for one watched root."""

    def __init__(
        self,
        root: Path,
        rules: IgnoreRules,
        tracker: _StabilityTracker,
        on_event: Callable[[WatchEvent], None],
    ):
        super().__init__()
        self.root = root
        self._rules = rules
        self._tracker = tracker
        self._on_event = on_event

    def _should_watch(self, path: str) -> bool:
        try:
            rel = os.path.relpath(path, self.root)
        except ValueError:
            return False
        rel = normalize_path(rel)
        if rel == "." or rel.startswith("../"):
            return False
        if self._rules.ignores(rel):
            logger.debug("Ignoring %s", rel)
            return False
        return True

    def _unlink(self, path: str) -> None:
        self._tracker.cancel(path)
        if not self._should_watch(path):
            return
        try:
            self._on_event(WatchEvent(UNLINK, path, 0))
        except Exception:
            logger.exception("Error handling unlink for %s", path)

    def on_created(self, event: FileCreatedEvent | DirCreatedEvent) -> None:  # type: ignore[override]
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if self._should_watch(path):
            self._tracker.track(ADD, path)

    def on_modified(self, event: FileModifiedEvent | DirModifiedEvent) -> None:  # type: ignore[override]
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if self._should_watch(path):
            self._tracker.track(CHANGE, path)

    def on_deleted(self, event: FileDeletedEvent | DirDeletedEvent) -> None:  # type: ignore[override]
        if event.is_directory:
            return
        self._unlink(os.fsdecode(event.src_path))

    def on_moved(self, event: FileMovedEvent | DirMovedEvent) -> None:  # type: ignore[override]
        if event.is_directory:
            return
        self._unlink(os.fsdecode(event.src_path))
        dest = os.fsdecode(event.dest_path)
        if self._should_watch(dest):
            self._tracker.track(ADD, dest)


class ProjectWatcher:
    """Watches the project root plus the linked dependency roots.

    Usage:
        watcher = ProjectWatcher(root, on_event, stability_threshold=0.2)
        watcher.start([dep_root, ...])
        ...
        watcher.stop()
    """

    def __init__(
        self,
        root: Path,
        on_event: Callable[[WatchEvent], None],
        stability_threshold: float = 0.2,
        ignore_patterns: Iterable[str] = (),
    ):
        self.root = Path(root)
        self._ignore_patterns = list(ignore_patterns)
        self._tracker = _StabilityTracker(stability_threshold, on_event)
        self._on_event = on_event
        self._observer: Any | None = None
        # root path -> watchdog ObservedWatch
        self._watches: dict[str, Any] = {}
        self._lock = threading.Lock()
        self.ready = threading.Event()

    # ---- lifecycle ----

    def start(self, extra_roots: Iterable[Path] = ()) -> None:
        """Start watching; returns once every root is scheduled."""
        if not self.root.is_dir():
            raise WatcherError(f"Project root does not exist: {self.root}")

        observer = Observer()
        self._observer = observer
        try:
            self._schedule(
                self.root, IgnoreRules.for_root(self.root, self._ignore_patterns)
            )
            for extra in extra_roots:
                self._schedule(Path(extra), IgnoreRules.for_root(Path(extra)))
            observer.start()
        except OSError as exc:
            # e.g. inotify watch or instance limits exhausted
            self._observer = None
            self._watches.clear()
            raise WatcherError(f"Could not start file watcher: {exc}") from exc
        self._tracker.start()
        self.ready.set()
        logger.info(
            "Watching '%s' (%d linked root%s, stable=%.0fms)",
            self.root,
            len(self._watches) - 1,
            "" if len(self._watches) == 2 else "s",
            self._tracker.threshold * 1000,
        )

    def stop(self) -> None:
        """Stop watching and release resources."""
        if self._observer:
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join(timeout=5)
            self._observer = None
        self._watches.clear()
        self._tracker.stop()
        self.ready.clear()
        logger.info("Watcher stopped.")

    @property
    def is_running(self) -> bool:
        """Return whether the watcher is currently active."""
        return self._observer is not None and self._observer.is_alive()

    # ---- linked roots hot-update ----

    def watch_roots(self, extra_roots: Iterable[Path]) -> None:
        """Replace the set of linked dependency roots being watched."""
        wanted = {str(Path(p)): Path(p) for p in extra_roots}
        project = str(self.root)
        with self._lock:
            for key in [k for k in self._watches if k != project and k not in wanted]:
                watch = self._watches.pop(key)
                if self._observer is not None:
                    self._observer.unschedule(watch)
                logger.info("Stopped watching linked root %s", key)
        for key, path in wanted.items():
            if key in self._watches:
                continue
            try:
                self._schedule(path, IgnoreRules.for_root(path))
            except OSError as exc:
                raise WatcherError(f"Could not watch {path}: {exc}") from exc
            logger.info("Watching linked root %s", key)

    @property
    def roots(self) -> list[str]:
        with self._lock:
            return list(self._watches)

    def _schedule(self, root: Path, rules: IgnoreRules) -> None:
        handler = ProjectEventHandler(root, rules, self._tracker, self._on_event)
        watch = self._observer.schedule(handler, str(root), recursive=True)
        with self._lock:
            self._watches[str(root)] = watch
