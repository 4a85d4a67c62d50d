import json
import threading

import pytest
import requests

from app_link.errors import EventStreamError, RemoteError
from app_link.events import (
    BuildEvent,
    BuildEventListener,
    EventKind,
    Frame,
    SSEParser,
    listen_build,
    parse_event,
)


class FakeStream:
    def __init__(self, lines=(), status_code=200, body=None):
        self.status_code = status_code
        self.encoding = None
        self._lines = list(lines)
        self._body = body
        self.closed = False

    def iter_lines(self, decode_unicode=False):
        yield from self._lines

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body

    def close(self):
        self.closed = True


class FakeEventSession:
    def __init__(self, *responses):
        self.headers = {}
        self.gets = []
        self._responses = list(responses)

    def get(self, url, **kwargs):
        self.gets.append((url, kwargs))
        if not self._responses:
            raise requests.exceptions.ConnectionError("no more streams")
        return self._responses.pop(0)

    def close(self):
        pass


def _status(kind, **extra):
    return "data: " + json.dumps({"type": "build.status", "body": {"type": kind, **extra}})


@pytest.mark.unit
def test_sse_parser_frames():
    parser = SSEParser()
    lines = [": keepalive", "event: log", "id: 7", "data: {\"a\":", "data: 1}", ""]

    frames = [f for f in map(parser.feed, lines) if f is not None]

    assert frames == [Frame("log", '{"a":\n1}', "7")]
    assert parser.feed("") is None


@pytest.mark.unit
@pytest.mark.parametrize(
    "frame, kind",
    [
        (Frame("build_accepted", "{}"), EventKind.BUILD_ACCEPTED),
        (Frame("initial_link_required", ""), EventKind.INITIAL_LINK_REQUIRED),
        (Frame(data=_status("start")[6:]), EventKind.BUILD_ACCEPTED),
        (Frame(data=_status("success")[6:]), EventKind.BUILD_SUCCEEDED),
        (Frame(data=_status("fail")[6:]), EventKind.BUILD_FAILED),
        (Frame(data=_status("fail", code="initial_link_required")[6:]), EventKind.INITIAL_LINK_REQUIRED),
        (Frame(data='{"level": "warn", "message": "slow"}'), EventKind.LOG),
        (Frame("mystery", '{"x": 1}'), EventKind.UNKNOWN),
    ],
)
def test_parse_event_kinds(frame, kind):
    assert parse_event(frame).kind is kind


@pytest.mark.unit
def test_parse_event_rejects_non_objects():
    with pytest.raises(ValueError):
        parse_event(Frame(data="not json"))
    with pytest.raises(ValueError):
        parse_event(Frame(data="[1, 2]"))


@pytest.mark.unit
def test_unknown_events_and_bad_frames_are_skipped(caplog):
    seen = []
    listener = BuildEventListener(
        "http://events.test",
        "acme.store",
        {EventKind.BUILD_FAILED: seen.append},
        session=FakeEventSession(),
    )

    listener.handle_frame(Frame(data="{broken"))
    listener.handle_frame(Frame("mystery", "{}"))
    listener.handle_frame(Frame(data=_status("fail")[6:]))

    assert [e.kind for e in seen] == [EventKind.BUILD_FAILED]
    assert "Could not parse build event" in caplog.text


@pytest.mark.unit
def test_handler_errors_are_logged(caplog):
    def boom(event):
        raise RuntimeError("boom")

    listener = BuildEventListener(
        "http://events.test", "acme.store", {EventKind.LOG: boom}, session=FakeEventSession()
    )
    listener.dispatch(BuildEvent(EventKind.LOG, {"level": "info", "message": "x"}))

    assert "Error in handler" in caplog.text


def test_stream_dispatches_then_reports_drop():
    lines = [
        ": keepalive",
        "event: build_accepted",
        "data: {}",
        "",
        "data: not json",
        "",
        "event: mystery",
        "data: {}",
        "",
        _status("fail"),
        "",
    ]
    session = FakeEventSession(FakeStream(lines))
    seen = []
    fatal = []
    dropped = threading.Event()

    def on_fatal(exc):
        fatal.append(exc)
        dropped.set()

    listener = BuildEventListener(
        "http://events.test/",
        "acme.store",
        {EventKind.BUILD_ACCEPTED: seen.append, EventKind.BUILD_FAILED: seen.append},
        on_fatal=on_fatal,
        session=session,
    )
    listener.start(timeout=5)
    assert dropped.wait(timeout=5)
    listener.unlisten()

    assert [e.kind for e in seen] == [EventKind.BUILD_ACCEPTED, EventKind.BUILD_FAILED]
    assert isinstance(fatal[0], EventStreamError)
    url, kwargs = session.gets[0]
    assert url == "http://events.test/_v/events"
    assert kwargs["params"] == {"subject": "acme.store"}
    assert kwargs["stream"] is True


def test_start_fails_when_stream_refused():
    session = FakeEventSession(
        FakeStream(status_code=404, body={"code": "routing_error", "message": "app_not_found vtex.builder-hub"})
    )
    listener = BuildEventListener("http://events.test", "acme.store", {}, session=session)

    with pytest.raises(RemoteError) as info:
        listener.start(timeout=5)

    assert info.value.code == "routing_error"
    assert not listener.connected


def test_start_fails_when_unreachable():
    listener = BuildEventListener("http://events.test", "acme.store", {}, session=FakeEventSession())

    with pytest.raises(EventStreamError):
        listener.start(timeout=5)


def test_reconnects_when_enabled():
    session = FakeEventSession(
        FakeStream([]),
        FakeStream(["event: build_succeeded", "data: {}", ""]),
    )
    got = threading.Event()
    fatal = []
    listener = BuildEventListener(
        "http://events.test",
        "acme.store",
        {EventKind.BUILD_SUCCEEDED: lambda ev: got.set()},
        reconnect=True,
        on_fatal=fatal.append,
        session=session,
    )
    listener.start(timeout=5)
    try:
        assert got.wait(timeout=5)
    finally:
        listener.unlisten()
    assert fatal == []


class RecordingListener:
    def __init__(self):
        self.started = False
        self.unlistened = False

    def start(self, timeout=30.0):
        self.started = True

    def unlisten(self):
        self.unlistened = True


@pytest.mark.unit
def test_listen_build_releases_listener_on_failure():
    listener = RecordingListener()

    def trigger():
        assert listener.started
        raise EventStreamError("link failed")

    with pytest.raises(EventStreamError):
        listen_build(listener, trigger)
    assert listener.unlistened


@pytest.mark.unit
def test_listen_build_returns_subscription():
    listener = RecordingListener()

    sub = listen_build(listener, lambda: None)

    assert not listener.unlistened
    sub.unlisten()
    assert listener.unlistened
