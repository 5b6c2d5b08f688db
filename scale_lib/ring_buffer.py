"""Bounded buffers shared between threads: the diagnostic log and weight smoothing."""

import threading
from collections import deque
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Capped history guarded by a lock.

    Appending past capacity evicts the oldest entry. The reader thread,
    watchdog and API threads all touch the same instance.
    """

    def __init__(self, maxlen: int) -> None:
        if maxlen <= 0:
            raise ValueError(f"maxlen must be positive, got {maxlen}")

        self._maxlen = maxlen
        self._items: deque[T] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    @property
    def maxlen(self) -> int:
        return self._maxlen

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def append(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    def snapshot(self) -> List[T]:
        """Copy of the contents, oldest first."""
        with self._lock:
            return list(self._items)

    def newest(self, limit: Optional[int] = None) -> List[T]:
        """Up to ``limit`` entries, newest first (all when limit is None)."""
        with self._lock:
            items = list(reversed(self._items))
        return items if limit is None else items[:limit]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class SmoothingWindow(RingBuffer[float]):
    """Moving average over the last N decoded weights."""

    def mean(self) -> Optional[float]:
        with self._lock:
            return self._mean()

    def push(self, value: float) -> float:
        """Add a weight and return the average including it."""
        with self._lock:
            self._items.append(value)
            return sum(self._items) / len(self._items)

    def _mean(self) -> Optional[float]:
        if not self._items:
            return None
        return sum(self._items) / len(self._items)
