"""Build event stream.

The builder pushes build lifecycle notifications as server-sent events on
a long-lived connection scoped to the app.  :class:`BuildEventListener`
reads that stream on a daemon thread and dispatches each event to a
handler table keyed by :class:`EventKind`.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import requests

from app_link import __version__
from app_link.errors import (
    INITIAL_LINK_REQUIRED,
    EventStreamError,
    RemoteError,
    remote_error_for,
)

logger = logging.getLogger(__name__)

EVENTS_PATH = "/_v/events"


class EventKind(enum.Enum):
    BUILD_ACCEPTED = "build_accepted"
    BUILD_SUCCEEDED = "build_succeeded"
    BUILD_FAILED = "build_failed"
    INITIAL_LINK_REQUIRED = "initial_link_required"
    LOG = "log"
    UNKNOWN = "unknown"


# body.type of a "build.status" message
_STATUS_KINDS = {
    "start": EventKind.BUILD_ACCEPTED,
    "success": EventKind.BUILD_SUCCEEDED,
    "fail": EventKind.BUILD_FAILED,
}

_KINDS_BY_VALUE = {k.value: k for k in EventKind}


@dataclass(frozen=True)
class BuildEvent:
    kind: EventKind
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class Frame:
    """One server-sent event frame."""
    event: str = "message"
    data: str = ""
    id: str | None = None


class SSEParser:
    """Incremental parser for ``text/event-stream`` lines."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._id: str | None = None

    def feed(self, line: str) -> Frame | None:
        """Consume one line; return a frame when a blank line completes it."""
        if not line:
            if not self._data and not self._event:
                return None
            frame = Frame(self._event or "message", "\n".join(self._data), self._id)
            self._event, self._data = "", []
            return frame
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        return None


def parse_event(frame: Frame) -> BuildEvent:
    """Turn a frame into a :class:`BuildEvent`.

    Raises ValueError when the frame's data is not a JSON object.
    """
    if frame.data:
        payload = json.loads(frame.data)
        if not isinstance(payload, dict):
            raise ValueError(f"event data is not an object: {frame.data[:80]!r}")
    else:
        payload = {}

    kind = _KINDS_BY_VALUE.get(frame.event)
    if kind is not None:
        return BuildEvent(kind, payload)

    body = payload.get("body")
    if payload.get("type") == "build.status" and isinstance(body, dict):
        if body.get("code") == INITIAL_LINK_REQUIRED:
            return BuildEvent(EventKind.INITIAL_LINK_REQUIRED, payload)
        return BuildEvent(_STATUS_KINDS.get(body.get("type"), EventKind.UNKNOWN), payload)
    if payload.get("level") and "message" in payload:
        return BuildEvent(EventKind.LOG, payload)
    return BuildEvent(EventKind.UNKNOWN, payload)


def _noop(event: BuildEvent) -> None:
    logger.debug("Ignoring build event %s", event.kind.value)


class BuildEventListener:
    """Reads the build event stream of one app and dispatches its events.

    A malformed event is logged and skipped.  When the connection drops,
    *on_fatal* is called with an :class:`EventStreamError`, unless
    *reconnect* is set, in which case the stream is reopened with capped
    exponential backoff.
    """

    def __init__(
        self,
        base_url: str,
        subject: str,
        handlers: Mapping[EventKind, Callable[[BuildEvent], None]],
        token: str = "",
        reconnect: bool = False,
        on_fatal: Callable[[Exception], None] | None = None,
        session: requests.Session | None = None,
        max_backoff: float = 30.0,
    ):
        self.url = f"{base_url.rstrip('/')}{EVENTS_PATH}"
        self.subject = subject
        self._handlers = dict(handlers)
        self._reconnect = reconnect
        self._on_fatal = on_fatal
        self._max_backoff = max_backoff
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = f"app-link/{__version__}"
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        self._stop = threading.Event()
        self._connected = threading.Event()
        self._settled = threading.Event()  # connected, or failed before connecting
        self._start_error: Exception | None = None
        self._response: requests.Response | None = None
        self._thread: threading.Thread | None = None

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    # ---- lifecycle ----

    def start(self, timeout: float = 30.0) -> None:
        """Open the stream; returns once connected, raises if that fails."""
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="BuildEvents")
        self._thread.start()
        if not self._settled.wait(timeout):
            self.unlisten()
            raise EventStreamError(f"Timed out connecting to {self.url}")
        if self._start_error is not None:
            raise self._start_error
        logger.debug("Listening for build events of %s", self.subject)

    def unlisten(self) -> None:
        """Close the stream and release the connection."""
        self._stop.set()
        response = self._response
        if response is not None:
            response.close()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        self.session.close()

    # ---- dispatch ----

    def dispatch(self, event: BuildEvent) -> None:
        handler = self._handlers.get(event.kind, _noop)
        try:
            handler(event)
        except Exception:
            logger.exception("Error in handler for build event %s", event.kind.value)

    def handle_frame(self, frame: Frame) -> None:
        try:
            event = parse_event(frame)
        except ValueError as exc:
            logger.warning("Could not parse build event: %s", exc)
            return
        logger.debug("Build event: %s", event.kind.value)
        self.dispatch(event)

    # ---- stream ----

    def _open(self) -> requests.Response:
        try:
            response = self.session.get(
                self.url,
                params={"subject": self.subject},
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(10, None),
            )
        except requests.exceptions.RequestException as exc:
            raise EventStreamError(f"Could not connect to {self.url}: {exc}") from exc
        if response.status_code >= 400:
            try:
                data = response.json()
            except ValueError:
                data = {}
            response.close()
            raise remote_error_for(
                response.status_code,
                data if isinstance(data, dict) else {},
                f"Event stream refused with status {response.status_code}",
            )
        return response

    def _consume(self, response: requests.Response) -> None:
        if response.encoding is None:
            response.encoding = "utf-8"
        parser = SSEParser()
        for line in response.iter_lines(decode_unicode=True):
            if self._stop.is_set():
                return
            frame = parser.feed(line)
            if frame is not None:
                self.handle_frame(frame)

    def _run(self) -> None:
        backoff = 1.0
        while not self._stop.is_set():
            try:
                response = self._open()
                self._response = response
                if not self._connected.is_set():
                    self._connected.set()
                    self._settled.set()
                backoff = 1.0
                self._consume(response)
                error: Exception = EventStreamError("Event stream closed by the server")
            except (EventStreamError, RemoteError) as exc:
                error = exc
            except (requests.exceptions.RequestException, OSError, ValueError) as exc:
                error = EventStreamError(f"Event stream dropped: {exc}")
            finally:
                self._response = None

            if self._stop.is_set():
                return
            if not self._connected.is_set():
                self._start_error = error
                self._settled.set()
                return
            if not self._reconnect:
                logger.error("%s", error)
                if self._on_fatal is not None:
                    self._on_fatal(error)
                return
            logger.warning("%s; reconnecting in %.0fs", error, backoff)
            self._stop.wait(backoff)
            backoff = min(backoff * 2, self._max_backoff)


@dataclass
class Subscription:
    """Handle returned by :func:`listen_build`; call :meth:`unlisten` on teardown."""
    listener: BuildEventListener

    def unlisten(self) -> None:
        self.listener.unlisten()


def listen_build(
    listener: BuildEventListener,
    trigger: Callable[[], Any],
    timeout: float = 30.0,
) -> Subscription:
    """Connect *listener*, then run *trigger* (the full link).

    Connecting first means the events of the triggered build are not
    missed.  If the trigger fails, the listener is released and the error
    propagates.
    """
    listener.start(timeout=timeout)
    try:
        trigger()
    except BaseException:
        listener.unlisten()
        raise
    return Subscription(listener)
