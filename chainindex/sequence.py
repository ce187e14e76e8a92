import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional


class Sequence:
    """
    Monotonic integer generator seeded lazily from persisted state.

    ``seed`` returns the highest value already in use (0 when none).
    """

    def __init__(self, seed: Callable[[], int]):
        self._seed = seed
        self._last: Optional[int] = None
        self._lock = threading.Lock()

    def _current(self) -> int:
        if self._last is None:
            self._last = self._seed() or 0
        return self._last

    def next(self) -> int:
        with self._lock:
            self._last = self._current() + 1
            return self._last

    @contextmanager
    def allocate(self) -> Iterator[int]:
        """Yield the next value, consuming it only if the block succeeds."""
        with self._lock:
            value = self._current() + 1
            yield value
            self._last = value
