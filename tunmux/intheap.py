"""A min-heap of integers."""

from __future__ import annotations

import heapq
from collections.abc import Iterable


class IntHeap:
    """Min-heap of integers; ``pop`` always yields the smallest value."""

    def __init__(self, values: Iterable[int] = ()) -> None:
        self._items = [int(value) for value in values]
        heapq.heapify(self._items)

    def push(self, value: int) -> None:
        """Add a value to the heap."""
        heapq.heappush(self._items, int(value))

    def pop(self) -> int:
        """Remove and return the smallest value; raise IndexError when empty."""
        if not self._items:
            raise IndexError("pop from an empty heap")
        return heapq.heappop(self._items)

    def __len__(self) -> int:
        return len(self._items)