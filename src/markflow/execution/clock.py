"""Time sources for the executor.

Wait states and timeouts go through a Clock so that tests and dry runs can
advance virtual time instead of sleeping. Parallel branches each get a
forked clock; when the branches join, the parent moves to the latest
branch time, as if the branches had really run side by side.
"""

from __future__ import annotations

import threading
import time
from typing import List, Protocol, Sequence, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now(self) -> float:
        """Seconds on a monotonic scale."""
        ...

    def sleep(self, seconds: float) -> None:
        ...

    def fork(self) -> "Clock":
        """Clock for a concurrently running branch."""
        ...

    def join(self, forks: Sequence["Clock"]) -> None:
        """Resume after the given forks have finished."""
        ...


class SystemClock:
    """Real time."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def fork(self) -> "SystemClock":
        return self

    def join(self, forks: Sequence[Clock]) -> None:
        return None


class ManualClock:
    """Virtual time that advances only when something sleeps.

    Every sleep, from this clock or any fork of it, is recorded in `sleeps`.

    Usage:
        clock = ManualClock()
        clock.sleep(60)
        assert clock.now() == 60
        assert clock.sleeps == [60]
    """

    def __init__(self, start: float = 0.0, _sleeps: List[float] | None = None, _lock: threading.Lock | None = None):
        self._now = float(start)
        self._lock = _lock or threading.Lock()
        self.sleeps: List[float] = _sleeps if _sleeps is not None else []

    def now(self) -> float:
        return self._now

    def sleep(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot sleep a negative duration")
        with self._lock:
            self._now += seconds
            self.sleeps.append(seconds)

    def fork(self) -> "ManualClock":
        return ManualClock(self._now, _sleeps=self.sleeps, _lock=self._lock)

    def join(self, forks: Sequence[Clock]) -> None:
        latest = max((f.now() for f in forks), default=self._now)
        self._now = max(self._now, latest)
