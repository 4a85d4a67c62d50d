"""The link session.

A :class:`WatchSession` owns everything bound to one link invocation: the
build event subscription, the file watcher, the pending change queue, the
debouncer that flushes it and the :class:`LinkConfig` of the latest full
link.  Two sources can ask for a full link at any time (a relink answered
with ``initial_link_required`` and the same condition pushed on the event
stream); both go through :meth:`WatchSession.perform_initial_link`, which
ignores a trigger while another full link is in flight.
"""

from __future__ import annotations

import logging
import re
import sys
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

from app_link.builder import BUILD_ACCEPTED, BuilderClient, format_nano
from app_link.config import Config, load_project_settings
from app_link.errors import (
    LINK_ON_PRODUCTION,
    ROUTING_ERROR,
    BuilderVersionError,
    BuildInProgress,
    CommandError,
    InitialLinkRequired,
    LinkError,
    RemoteError,
)
from app_link.events import (
    BuildEvent,
    BuildEventListener,
    EventKind,
    Subscription,
    listen_build,
)
from app_link.files import IgnoreRules, list_local_files, normalize_path, to_file_entries
from app_link.linked_deps import (
    LinkConfig,
    create_link_config,
    get_linked_files,
    linked_deps_dirs,
)
from app_link.manifest import Manifest
from app_link.queue import Change, ChangeQueue, Debouncer
from app_link.watcher import CHANGE, UNLINK, ProjectWatcher, WatchEvent

logger = logging.getLogger(__name__)

DELETE_SIGN = "D"
UPDATE_SIGN = "U"

Handlers = dict[EventKind, Callable[[BuildEvent], None]]
ListenerFactory = Callable[[Handlers, Callable[[Exception], None]], BuildEventListener]
WatcherFactory = Callable[[Path, Callable[[WatchEvent], None]], ProjectWatcher]


def classify(event: WatchEvent) -> bool | None:
    """Return True for a delete, False for an update, None to ignore.

    An empty file reported by ``change`` is treated as deleted (some editors
    truncate before writing); an empty ``add`` is still being written.
    """
    if event.kind == UNLINK:
        return True
    if event.size > 0:
        return False
    if event.kind == CHANGE:
        return True
    return None


def translate_setup_error(exc: RemoteError) -> LinkError:
    """Turn known setup refusals into actionable :class:`CommandError`s."""
    message = str(exc)
    if exc.code == ROUTING_ERROR and re.search(r"app_not_found.*builder-hub", message):
        return CommandError(
            "Please install the builder-hub app in your account to enable app linking"
        )
    if exc.code == LINK_ON_PRODUCTION:
        return CommandError(
            "Please remove your workspace from production to enable app linking"
        )
    return exc


class WatchSession:
    """Coordinates the full link, the watcher and the build event stream."""

    def __init__(
        self,
        root: Path,
        manifest: Manifest,
        client: BuilderClient,
        config: Config,
        listener_factory: ListenerFactory | None = None,
        watcher_factory: WatcherFactory | None = None,
        debugger: Callable[[Manifest], Any] | None = None,
        out: TextIO | None = None,
    ):
        self.root = Path(root).resolve()
        self.manifest = manifest
        self.app_id = manifest.app_id
        self.client = client
        self.config = config
        self._listener_factory = listener_factory or self._default_listener
        self._watcher_factory = watcher_factory or self._default_watcher
        self._debugger = debugger
        self._out = out or sys.stdout

        self.queue = ChangeQueue()
        self.debouncer = Debouncer(config.quiet_period, self.flush)
        self.link_config = LinkConfig()
        self.debugger_started = False
        self.watcher: ProjectWatcher | None = None
        self.subscription: Subscription | None = None
        self.error: Exception | None = None

        self._linking = threading.Lock()
        self._done = threading.Event()
        self._stopped = False
        # Reentrant: the SIGINT handler runs stop() on the thread running start()
        self._lifecycle = threading.RLock()

    # ---- collaborators ----

    def _default_listener(
        self, handlers: Handlers, on_fatal: Callable[[Exception], None]
    ) -> BuildEventListener:
        return BuildEventListener(
            self.config.events_url,
            self.manifest.subject,
            handlers,
            token=self.config.auth_token,
            reconnect=self.config.reconnect_events,
            on_fatal=on_fatal,
        )

    def _default_watcher(
        self, root: Path, on_event: Callable[[WatchEvent], None]
    ) -> ProjectWatcher:
        return ProjectWatcher(
            root,
            on_event,
            stability_threshold=self.config.stability_threshold,
            ignore_patterns=self.config.ignore_patterns,
        )

    # ---- lifecycle ----

    def start(self) -> None:
        """Listen for build events, run the first full link, then watch.

        Any failure here is fatal and leaves nothing running.
        """
        logger.info("Linking app %s", self.app_id)
        listener = self._listener_factory(self.handlers(), self.fail)
        try:
            subscription = listen_build(listener, self.perform_initial_link)
        except RemoteError as exc:
            translated = translate_setup_error(exc)
            if translated is exc:
                raise
            raise translated from exc
        with self._lifecycle:
            self.subscription = subscription
            if self._stopped:
                # Interrupted during the first link
                self._release()
                return
        try:
            self.start_watching()
        except BaseException:
            self.stop()
            raise

    def start_watching(self) -> None:
        watcher = self._watcher_factory(self.root, self.handle_watch_event)
        watcher.start(linked_deps_dirs(self.link_config))
        with self._lifecycle:
            self.watcher = watcher
            if self._stopped:
                self._release()
                return
            self.debouncer.start()

    def stop(self) -> None:
        """Unsubscribe the watcher and the event listener.

        Safe to call at any point, including while :meth:`start` is still
        running; whatever start creates afterwards is released at once.
        """
        with self._lifecycle:
            self._stopped = True
            self._release()
        self._done.set()

    def _release(self) -> None:
        watcher, self.watcher = self.watcher, None
        subscription, self.subscription = self.subscription, None
        if watcher is not None:
            watcher.stop()
        if subscription is not None:
            subscription.unlisten()
        self.debouncer.stop()

    def fail(self, exc: Exception) -> None:
        """Abort the session with *exc*; the runner tears it down."""
        if self.error is None:
            self.error = exc
        logger.error("Link session aborted: %s", exc)
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the session is stopped or failed."""
        return self._done.wait(timeout)

    # ---- full link ----

    def perform_initial_link(self) -> bool:
        """Upload the current local file set.

        Returns False, doing nothing, when a full link is already running.
        """
        if not self._linking.acquire(blocking=False):
            logger.info("A full link is already in progress; ignoring trigger.")
            return False
        try:
            self._initial_link()
        finally:
            self._linking.release()
        return True

    def _initial_link(self) -> None:
        settings = load_project_settings(self.root)
        link_config = create_link_config(
            self.root, settings.get("links") or {}, self.config.link_registry
        )
        sticky_hint = self.client.most_available_host(
            self.app_id, self.config.sticky_hosts, self.config.availability_timeout
        )

        deps = list(link_config.metadata.items())
        if deps:
            plural = len(deps) > 1
            logger.info(
                "The following local dependenc%s linked to your app:",
                "ies are" if plural else "y is",
            )
            for dep, path in deps:
                logger.info("%s (from: %s)", dep, path)

        rules = IgnoreRules.for_root(self.root, self.config.ignore_patterns)
        local_files = to_file_entries(self.root, list_local_files(self.root, rules))
        linked_files = get_linked_files(link_config)
        files = local_files + linked_files

        linked_info = (
            f" ({len(linked_files)} from linked dependencies)" if linked_files else ""
        )
        logger.info(
            "Sending %d file%s%s", len(files), "s" if len(files) != 1 else "", linked_info
        )
        for entry in files:
            logger.debug("Sending %s", entry.path)

        try:
            result = self.client.link_app(
                self.app_id,
                files,
                sticky=True,
                sticky_hint=sticky_hint,
                timeout=self.config.request_timeout,
            )
            code = result.get("code")
            if code != BUILD_ACCEPTED:
                raise BuilderVersionError(
                    f"Builder answered {code!r} instead of {BUILD_ACCEPTED!r}; "
                    "please update the builder to the latest version."
                )
        except BuildInProgress:
            logger.warning("Build for %s is already in progress", self.app_id)

        self.link_config = link_config
        watcher = self.watcher
        if watcher is not None:
            watcher.watch_roots(linked_deps_dirs(link_config))

    def warn_and_link_from_start(self) -> None:
        """Recovery path: the builder has no state for the app."""
        logger.warning("Initial link requested by builder")
        try:
            self.perform_initial_link()
        except Exception as exc:
            self.fail(exc)

    # ---- local changes ----

    def remote_path(
        self, abs_path: str, link_config: LinkConfig | None = None
    ) -> str | None:
        """Map an absolute local path to the path sent to the builder."""
        if link_config is None:
            link_config = self.link_config
        linked = link_config.to_remote_path(abs_path)
        if linked is not None:
            return linked
        try:
            rel = Path(abs_path).relative_to(self.root)
        except ValueError:
            return None
        return normalize_path(str(rel))

    def handle_watch_event(self, event: WatchEvent) -> None:
        remove = classify(event)
        if remove is None:
            return
        self.queue_change(event.path, remove)

    def queue_change(self, abs_path: str, remove: bool = False) -> None:
        path = self.remote_path(abs_path)
        if path is None:
            logger.debug("Ignoring change outside watched roots: %s", abs_path)
            return
        content = None
        if not remove:
            try:
                content = Path(abs_path).read_bytes()
            except OSError as exc:
                logger.warning("Skipping %s: %s", path, exc)
                return
        now = datetime.now()
        sign = DELETE_SIGN if remove else UPDATE_SIGN
        print(
            f"{now:%H:%M:%S}:{now.microsecond // 1000:03d} - {sign} {path}",
            file=self._out,
            flush=True,
        )
        # Queued under the local path; mapped when the batch is sent
        self.queue.enqueue(Change(str(abs_path), content))
        self.debouncer.touch()

    def to_remote_batch(self, pending: list[Change]) -> list[Change]:
        """Map queued local paths with the current :class:`LinkConfig`.

        Changes that no longer fall inside a watched root (their linked
        dependency was dropped by the latest full link) are discarded.
        """
        link_config = self.link_config
        batch: dict[str, Change] = {}
        for change in pending:
            path = self.remote_path(change.path, link_config)
            if path is None:
                logger.debug("Dropping change no longer linked: %s", change.path)
                continue
            batch[path] = Change(path, change.content)
        return list(batch.values())

    def flush(self) -> None:
        """Send every pending change in one relink request.

        A failed batch is not retried; the files are sent again only when
        they change again.
        """
        batch = self.to_remote_batch(self.queue.drain())
        if not batch:
            return
        try:
            self.client.relink_app(self.app_id, batch)
        except InitialLinkRequired:
            # The full link supersedes the batch
            self.warn_and_link_from_start()
        except BuildInProgress:
            logger.warning(
                "Build for %s is already in progress; %d change(s) not sent.",
                self.app_id,
                len(batch),
            )
        except LinkError as exc:
            logger.error("Failed to send %d change(s): %s", len(batch), exc)

    # ---- build events ----

    def handlers(self) -> Handlers:
        return {
            EventKind.BUILD_ACCEPTED: self.on_build_accepted,
            EventKind.BUILD_SUCCEEDED: self.on_build_succeeded,
            EventKind.BUILD_FAILED: self.on_build_failed,
            EventKind.INITIAL_LINK_REQUIRED: self.on_initial_link_required,
            EventKind.LOG: self.on_log,
        }

    def on_build_accepted(self, event: BuildEvent) -> None:
        logger.info("Build started for %s", self.app_id)

    def on_build_failed(self, event: BuildEvent) -> None:
        logger.error("App build failed. Waiting for changes...")

    def on_initial_link_required(self, event: BuildEvent) -> None:
        self.warn_and_link_from_start()

    def on_log(self, event: BuildEvent) -> None:
        level = str(event.payload.get("level", "info")).upper()
        logger.log(
            getattr(logging, level, logging.INFO), "%s", event.payload.get("message")
        )

    def on_build_succeeded(self, event: BuildEvent) -> None:
        logger.info("Build finished for %s", self.app_id)
        if self.debugger_started:
            return
        self.debugger_started = True
        if self._debugger is None:
            return
        port = self._debugger(self.manifest)
        if port:
            logger.info(
                "Debugger tunnel listening on :%s. Open chrome://inspect in "
                "Google Chrome to debug your running application.",
                port,
            )

    # ---- other operations ----

    def clean(self) -> None:
        """Ask the builder to invalidate its cache for the app."""
        logger.info("Requesting to clean cache in builder.")
        result = self.client.clean(self.app_id)
        logger.info(
            "Cache cleaned successfully in %s", format_nano(result.get("timeNano", 0))
        )
