from __future__ import annotations

from collections import deque
from typing import Callable, Generic, Iterable, Literal, Optional, TypeVar

T = TypeVar("T")
OverflowStrategy = Literal["drop_oldest", "evict"]


class BoundedBuffer(Generic[T]):
    """Insertion-ordered bounded buffer.

    Synchronous by construction: producers on the event loop never await.

    Overflow strategies:
        drop_oldest: discard the oldest items to make room.
        evict: keep every item, then hand the oldest overflow to ``on_evict``
            (relocation, not loss).
    """

    def __init__(
        self,
        capacity: int,
        *,
        overflow_strategy: OverflowStrategy = "drop_oldest",
        on_drop: Optional[Callable[[list[T]], None]] = None,
        on_evict: Optional[Callable[[list[T]], None]] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._items: deque[T] = deque()
        self._overflow = overflow_strategy
        self._on_drop = on_drop
        self._on_evict = on_evict

        self.dropped_total = 0
        self.evicted_total = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def remaining(self) -> int:
        return max(0, self._capacity - len(self._items))

    @property
    def utilization(self) -> float:
        """Occupancy as a fraction of capacity (0.0 to 1.0+)."""
        return len(self._items) / self._capacity

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def put(self, item: T) -> None:
        """Append according to the overflow strategy."""
        if self._overflow == "drop_oldest" and len(self._items) >= self._capacity:
            self._discard(len(self._items) - self._capacity + 1)

        self._items.append(item)

        if self._overflow == "evict" and len(self._items) > self._capacity:
            overflow = self._popleft(len(self._items) - self._capacity)
            self.evicted_total += len(overflow)
            if self._on_evict:
                self._on_evict(overflow)

    def drain(self) -> list[T]:
        """Snapshot-and-clear: return every buffered item in FIFO order."""
        items = list(self._items)
        self._items.clear()
        return items

    def requeue(self, items: Iterable[T], *, limit: int | None = None) -> int:
        """Put a failed batch back at the head, ahead of newer arrivals.

        With ``limit`` only the most recent ``limit`` items of the batch are
        restored; the rest are counted as dropped. Returns the number restored.
        """
        batch = list(items)
        if limit is not None:
            keep = max(0, limit)
            lost = batch[: len(batch) - keep] if keep < len(batch) else []
            batch = batch[len(lost):]
            if lost:
                self.dropped_total += len(lost)
                if self._on_drop:
                    self._on_drop(lost)
        self._items.extendleft(reversed(batch))
        return len(batch)

    def _popleft(self, n: int) -> list[T]:
        return [self._items.popleft() for _ in range(min(n, len(self._items)))]

    def _discard(self, n: int) -> None:
        dropped = self._popleft(n)
        if dropped:
            self.dropped_total += len(dropped)
            if self._on_drop:
                self._on_drop(dropped)
