"""Single-threaded timer queue used to drive the job poller.

Callbacks never run concurrently: the queue is drained by the caller, one
callback at a time, and a callback may schedule further timers.
"""

import heapq
import itertools
import logging
import time
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class CancelToken:
    """Handle returned by :meth:`TimerQueue.schedule`."""

    __slots__ = ("_cancelled",)

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class TimerQueue:
    """Minimal ``schedule(delay, fn) -> token`` scheduler.

    ``clock`` returns seconds and ``sleep`` waits a number of seconds; tests
    pass a fake pair so that retries and debouncing run without wall-clock
    waits.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        self._clock = clock
        self._sleep = sleep
        self._counter = itertools.count()
        self._timers: List[Tuple[float, int, CancelToken, Callable[[], None]]] = []

    def schedule(self, delay_ms: float, callback: Callable[[], None]) -> CancelToken:
        token = CancelToken()
        due = self._clock() + max(0.0, delay_ms) / 1000.0
        heapq.heappush(self._timers, (due, next(self._counter), token, callback))
        return token

    def pending(self) -> int:
        self._discard_cancelled()
        return len(self._timers)

    def next_due(self):
        self._discard_cancelled()
        return self._timers[0][0] if self._timers else None

    def run_once(self) -> bool:
        """Wait for the earliest live timer and run it. Returns False when idle."""
        self._discard_cancelled()
        if not self._timers:
            return False
        due, _, token, callback = heapq.heappop(self._timers)
        wait = due - self._clock()
        if wait > 0:
            self._sleep(wait)
        if not token.cancelled:
            callback()
        return True

    def advance(self, delay_ms: float) -> int:
        """Run every timer falling due within ``delay_ms`` from now.

        Returns the number of callbacks executed.
        """
        deadline = self._clock() + delay_ms / 1000.0
        executed = 0
        while True:
            due = self.next_due()
            if due is None or due > deadline:
                break
            self.run_once()
            executed += 1
        remaining = deadline - self._clock()
        if remaining > 0:
            self._sleep(remaining)
        return executed

    def run_until_idle(self, max_callbacks: int = 10000) -> int:
        executed = 0
        while executed < max_callbacks and self.run_once():
            executed += 1
        if executed >= max_callbacks:
            logger.warning("Timer queue still busy after %d callbacks", executed)
        return executed

    def _discard_cancelled(self) -> None:
        while self._timers and self._timers[0][2].cancelled:
            heapq.heappop(self._timers)
