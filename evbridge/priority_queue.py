"""A binary min-heap of items ordered by the time they become due."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


@dataclass(eq=False)
class Item:
    """A keyed entry in a :class:`PriorityQueue`.

    ``priority`` is the moment (on any monotonic clock) the item becomes due;
    smaller values come out first. ``index`` is kept up to date by the queue
    and is ``-1`` while the item is not queued.
    """

    value: str
    priority: float
    backoff: Any = None
    index: int = -1


class PriorityQueue:
    """Min-heap of :class:`Item` objects that tracks each item's position."""

    def __init__(self, items: Iterable[Item] = ()) -> None:
        self._heap: list[Item] = []
        for item in items:
            self.push(item)

    def __len__(self) -> int:
        return len(self._heap)

    def __getitem__(self, index: int) -> Item:
        return self._heap[index]

    def push(self, item: Item) -> None:
        """Add an item to the queue."""
        item.index = len(self._heap)
        self._heap.append(item)
        self._up(item.index)

    def pop(self) -> Item:
        """Remove and return the item with the smallest priority."""
        if not self._heap:
            raise IndexError("pop from empty priority queue")
        last = len(self._heap) - 1
        self._swap(0, last)
        self._down(0, last)
        item = self._heap.pop()
        item.index = -1
        return item

    def peek(self) -> Item:
        """Return the item with the smallest priority without removing it."""
        if not self._heap:
            raise IndexError("peek into empty priority queue")
        return self._heap[0]

    def update(self, item: Item, value: str, priority: float) -> None:
        """Change the value and priority of a queued item and restore order."""
        index = item.index
        if not (0 <= index < len(self._heap)) or self._heap[index] is not item:
            raise ValueError(f"item {item.value!r} is not in this queue")
        item.value = value
        item.priority = priority
        if not self._down(index, len(self._heap)):
            self._up(index)

    def _less(self, i: int, j: int) -> bool:
        return self._heap[i].priority < self._heap[j].priority

    def _swap(self, i: int, j: int) -> None:
        heap = self._heap
        heap[i], heap[j] = heap[j], heap[i]
        heap[i].index = i
        heap[j].index = j

    def _up(self, j: int) -> None:
        while j > 0:
            parent = (j - 1) // 2
            if not self._less(j, parent):
                break
            self._swap(parent, j)
            j = parent

    def _down(self, start: int, n: int) -> bool:
        i = start
        while True:
            child = 2 * i + 1
            if child >= n:
                break
            right = child + 1
            if right < n and self._less(right, child):
                child = right
            if not self._less(child, i):
                break
            self._swap(i, child)
            i = child
        return i > start