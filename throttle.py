import threading
import time
from collections import Counter, defaultdict, deque
from typing import Callable, Hashable, NamedTuple


class Admission(NamedTuple):
    granted: bool
    retry_after: float = 0.0


class PerUserThrottle:
    """Bounds how many tasks per key may start in a rolling window.

    A task is admitted only if fewer than ``limit`` tasks for the same key
    started within the last ``window_secs`` and fewer than ``limit`` are still
    running. Denied tasks get a ``retry_after`` hint and are expected to be
    re-queued, never dropped.
    """

    def __init__(
        self,
        limit: int = 10,
        window_secs: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("Throttle limit must be positive")
        self.limit = limit
        self.window_secs = window_secs
        self._clock = clock
        self._lock = threading.Lock()
        self._starts: dict[Hashable, deque[float]] = defaultdict(deque)
        self._in_flight: Counter = Counter()

    def try_acquire(self, key: Hashable) -> Admission:
        with self._lock:
            now = self._clock()
            starts = self._starts[key]
            while starts and now - starts[0] >= self.window_secs:
                starts.popleft()
            if len(starts) >= self.limit:
                return Admission(False, self.window_secs - (now - starts[0]))
            if self._in_flight[key] >= self.limit:
                return Admission(False, self.window_secs / self.limit)
            starts.append(now)
            self._in_flight[key] += 1
            return Admission(True)

    def release(self, key: Hashable) -> None:
        with self._lock:
            if self._in_flight[key] > 0:
                self._in_flight[key] -= 1
            if not self._in_flight[key]:
                del self._in_flight[key]

    def in_flight(self, key: Hashable) -> int:
        with self._lock:
            return self._in_flight[key]
