"""Pending change buffer and trailing-edge debouncer."""

from __future__ import annotations

import base64
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

IDLE = "idle"
PENDING = "pending"


@dataclass(frozen=True)
class Change:
    """A file mutation awaiting transmission.  ``content=None`` deletes."""
    path: str
    content: bytes | None = None

    @property
    def is_delete(self) -> bool:
        return self.content is None

    def to_payload(self) -> dict[str, str | None]:
        content = None
        if self.content is not None:
            content = base64.b64encode(self.content).decode("ascii")
        return {"path": self.path, "content": content}


class ChangeQueue:
    """Ordered buffer keeping only the latest change per path.

    A path keeps the position of its first enqueue within a batch; later
    changes to it replace the value in place.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, Change] = {}

    def enqueue(self, change: Change) -> None:
        with self._lock:
            self._pending[change.path] = change

    def drain(self) -> list[Change]:
        """Return every pending change and reset the queue in one step."""
        with self._lock:
            pending, self._pending = self._pending, {}
        return list(pending.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def pending_paths(self) -> list[str]:
        with self._lock:
            return list(self._pending)


class Debouncer:
    """Fires *on_fire* once no :meth:`touch` happened for *quiet_period* s.

    States: ``idle`` (no deadline) and ``pending`` (deadline set).  Each
    touch arms or pushes back the single deadline; :meth:`poll` fires the
    callback once the deadline has passed and returns to ``idle``.  A daemon
    thread drives :meth:`poll` while the debouncer is started.
    """

    def __init__(
        self,
        quiet_period: float,
        on_fire: Callable[[], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.quiet_period = quiet_period
        self._on_fire = on_fire
        self._clock = clock
        self._cond = threading.Condition()
        self._deadline: float | None = None
        self._stopped = True
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> str:
        with self._cond:
            return IDLE if self._deadline is None else PENDING

    @property
    def deadline(self) -> float | None:
        with self._cond:
            return self._deadline

    def touch(self) -> None:
        """Arm the timer, or push back the pending deadline."""
        with self._cond:
            self._deadline = self._clock() + self.quiet_period
            self._cond.notify()

    def poll(self, now: float | None = None) -> bool:
        """Fire if the deadline has passed.  Returns True when it fired."""
        with self._cond:
            if self._deadline is None:
                return False
            if now is None:
                now = self._clock()
            if now < self._deadline:
                return False
            self._deadline = None
        try:
            self._on_fire()
        except Exception:
            logger.exception("Error in debounced flush")
        return True

    # ---- lifecycle ----

    def start(self) -> None:
        with self._cond:
            self._stopped = False
        self._thread = threading.Thread(target=self._run, daemon=True, name="Debouncer")
        self._thread.start()

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopped:
                    if self._deadline is None:
                        self._cond.wait()
                        continue
                    remaining = self._deadline - self._clock()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
                if self._stopped:
                    return
            self.poll()
