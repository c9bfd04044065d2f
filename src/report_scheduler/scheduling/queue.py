"""Execution queue - priority-ordered pending executions.

Ordering rule: smallest sort key first, where the default key is
``-priority`` (critical=4 runs before low=1). Equal keys keep insertion
order: a new execution is inserted after every queued item whose key is
less than or equal to its own, and ``reorder`` uses Python's stable sort.

The off-peak reorderer swaps in a compound key
``(not off_peak_eligible, -priority)`` while the window is open; enqueues
made during that time use the same key so the queue stays sorted.

Not thread-safe on its own; the service calls it under its lock.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

from report_scheduler.models import ScheduleExecution

SortKey = Callable[[ScheduleExecution], Any]


def priority_key(execution: ScheduleExecution) -> tuple[int]:
    """Base ordering: highest priority first."""
    return (-execution.priority,)


class ExecutionQueue:
    """Stable priority queue of pending executions.

    Example:
        >>> queue = ExecutionQueue()
        >>> queue.enqueue(normal)    # priority 2
        1
        >>> queue.enqueue(critical)  # priority 4, jumps ahead
        1
        >>> queue.dequeue() is critical
        True
    """

    def __init__(self, key: SortKey = priority_key) -> None:
        self._items: list[ScheduleExecution] = []
        self._key: SortKey = key
        self._peak_size = 0

    @property
    def key(self) -> SortKey:
        return self._key

    @property
    def peak_size(self) -> int:
        """Largest queue length observed."""
        return self._peak_size

    def enqueue(self, execution: ScheduleExecution) -> int:
        """Insert in key order after all equal keys.

        Returns:
            1-based queue position, also stored on ``execution.queue_position``
        """
        new_key = self._key(execution)
        index = len(self._items)
        for i, queued in enumerate(self._items):
            if self._key(queued) > new_key:
                index = i
                break

        self._items.insert(index, execution)
        execution.queue_position = index + 1
        self._peak_size = max(self._peak_size, len(self._items))
        return execution.queue_position

    def dequeue(self) -> ScheduleExecution | None:
        """Pop the head, or None when empty."""
        if not self._items:
            return None
        return self._items.pop(0)

    def peek(self) -> ScheduleExecution | None:
        return self._items[0] if self._items else None

    def remove(self, execution_id: str) -> ScheduleExecution | None:
        """Remove one execution by ID."""
        for i, queued in enumerate(self._items):
            if queued.id == execution_id:
                return self._items.pop(i)
        return None

    def remove_for_schedule(self, schedule_id: str) -> list[ScheduleExecution]:
        """Remove every queued execution of a schedule, returning them."""
        removed = [e for e in self._items if e.schedule_id == schedule_id]
        if removed:
            self._items = [e for e in self._items if e.schedule_id != schedule_id]
        return removed

    def reorder(self, key: SortKey) -> None:
        """Stable re-sort under ``key``; later enqueues use the same key."""
        self._key = key
        self._items.sort(key=key)

    def has_schedule(self, schedule_id: str) -> bool:
        return any(e.schedule_id == schedule_id for e in self._items)

    def get(self, execution_id: str) -> ScheduleExecution | None:
        for queued in self._items:
            if queued.id == execution_id:
                return queued
        return None

    def snapshot(self) -> list[ScheduleExecution]:
        """Current order, head first."""
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ScheduleExecution]:
        return iter(list(self._items))

    def __bool__(self) -> bool:
        return bool(self._items)
