import threading

import pytest

from app_link.queue import IDLE, PENDING, Change, ChangeQueue, Debouncer


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.unit
def test_latest_change_per_path_wins():
    q = ChangeQueue()
    q.enqueue(Change("a.js", b"1"))
    q.enqueue(Change("b.js", b"2"))
    q.enqueue(Change("a.js", None))

    batch = q.drain()

    assert batch == [Change("a.js", None), Change("b.js", b"2")]
    assert batch[0].is_delete
    assert len(q) == 0
    assert q.drain() == []


@pytest.mark.unit
def test_change_payload_is_base64():
    assert Change("a.js", b"hi").to_payload() == {"path": "a.js", "content": "aGk="}
    assert Change("a.js").to_payload() == {"path": "a.js", "content": None}


@pytest.mark.unit
def test_changes_after_drain_start_a_new_batch():
    q = ChangeQueue()
    q.enqueue(Change("a.js", b"1"))
    q.drain()
    q.enqueue(Change("c.js", b"3"))

    assert q.pending_paths == ["c.js"]


@pytest.mark.unit
def test_debouncer_fires_once_after_quiet_period():
    clock = FakeClock()
    fired = []
    d = Debouncer(0.3, lambda: fired.append(clock.now), clock=clock)
    assert d.state == IDLE
    assert not d.poll()

    d.touch()
    assert d.state == PENDING
    assert d.deadline == pytest.approx(100.3)

    clock.now = 100.2
    d.touch()
    assert d.deadline == pytest.approx(100.5)

    assert not d.poll(100.4)
    assert d.poll(100.5)
    assert d.state == IDLE
    assert not d.poll(200.0)
    assert len(fired) == 1


@pytest.mark.unit
def test_debouncer_survives_failing_callback(caplog):
    clock = FakeClock()

    def boom():
        raise RuntimeError("boom")

    d = Debouncer(0.1, boom, clock=clock)
    d.touch()

    assert d.poll(101.0)
    assert d.state == IDLE
    assert "debounced flush" in caplog.text


def test_debouncer_thread_fires():
    fired = threading.Event()
    d = Debouncer(0.05, fired.set)
    d.start()
    try:
        d.touch()
        assert fired.wait(timeout=5)
    finally:
        d.stop()
    assert d.state == IDLE
