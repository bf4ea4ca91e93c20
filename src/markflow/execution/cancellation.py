"""Cancellation shared between concurrently running branches."""

from __future__ import annotations

import threading
from typing import List, Optional


# Error reported by a branch stopped because a sibling failed
STATES_BRANCH_CANCELLED = "States.BranchCancelled"


class CancelScope(threading.Event):
    """Stops the branches of a Parallel state after one of them fails.

    The scope remembers the earliest clock time at which a branch failed.
    A branch is stopped only once its own clock has reached that time, so
    under virtual time a sibling that fails earlier still gets to fail.

    Scopes of nested Parallel states are tripped together with their
    parent scope, including a parent that tripped before the child existed.

    Usage:
        scope = CancelScope(parent=outer)
        scope.trip(at=clock.now())
        if scope.stops(branch_clock.now()):
            ...
    """

    def __init__(self, parent: Optional["CancelScope"] = None):
        super().__init__()
        self.at: Optional[float] = None
        self._children: List[CancelScope] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent._adopt(self)

    def trip(self, at: float) -> None:
        """Cancel everything running at or after `at`."""
        with self._lock:
            if self.at is not None and self.at <= at:
                return
            self.at = at
            children = list(self._children)
        self.set()
        for child in children:
            child.trip(at)

    def stops(self, now: float) -> bool:
        """Whether a branch whose clock reads `now` must stop."""
        at = self.at
        return self.is_set() and at is not None and now >= at

    def _adopt(self, child: "CancelScope") -> None:
        with self._lock:
            self._children.append(child)
            at = self.at
        if at is not None:
            child.trip(at)
