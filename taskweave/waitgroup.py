"""A counter that can be waited on until it drops to zero."""

from __future__ import annotations

import threading
from typing import Set

from .scheduler import Fiber


class WaitGroup:
    """Holds a counter that can be incremented, decremented and waited on.

    A thread that waits blocks. A fiber running on a scheduler worker
    yields instead, so that its worker can carry on with other work while
    the count is non-zero.
    """

    def __init__(self, initial_count: int = 0) -> None:
        if initial_count < 0:
            raise ValueError("initial count must not be negative")
        self._count = initial_count
        self._lock = threading.Lock()
        self._threads = threading.Condition(self._lock)
        self._fibers: Set[Fiber] = set()

    @property
    def count(self) -> int:
        """The current value of the counter."""
        with self._lock:
            return self._count

    def add(self, count: int = 1) -> None:
        """Increase the counter by ``count``."""
        if count < 0:
            raise ValueError("count must not be negative")
        with self._lock:
            self._count += count

    def done(self) -> bool:
        """Decrease the counter by one; return True if it reached zero."""
        with self._lock:
            if self._count <= 0:
                raise RuntimeError("WaitGroup.done() called too many times")
            self._count -= 1
            if self._count:
                return False
            for fiber in list(self._fibers):
                fiber.notify()
            self._threads.notify_all()
            return True

    def wait(self) -> None:
        """Block until the counter is zero."""
        fiber = Fiber.current()
        with self._lock:
            if fiber is None:
                self._threads.wait_for(lambda: self._count == 0)
                return
            self._fibers.add(fiber)
            try:
                fiber.wait(self._lock, lambda: self._count == 0)
            finally:
                self._fibers.discard(fiber)