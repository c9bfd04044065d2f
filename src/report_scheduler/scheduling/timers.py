"""Timer heap - the single scheduling primitive.

Every timed event in the scheduler (a schedule's recurring fire, a
retry's delayed re-enqueue) is an entry on one min-heap keyed by fire
time. The driver tick pops what is due; nothing else keeps a timer.

┌──────────────────────────────────────────────────────────────────────────────┐
│  TIMER HEAP                                                                   │
│                                                                               │
│   arm(schedule_id, fire_at, now)      recurring, one per schedule            │
│   arm_retry(execution, fire_at)       one-shot                               │
│   clear(schedule_id)                  idempotent, recurring only             │
│   clear_all_for(schedule_id)          recurring + pending retries            │
│   clear_recurring()                   every recurring, retries kept          │
│   pop_due(now) → [TimerEntry]         ordered by (fire_at, seq)              │
│                                                                               │
│   heap: [(fire_at, seq, entry), ...]                                         │
│                                                                               │
│   Cancellation marks the entry cancelled in place; cancelled entries are     │
│   dropped when they reach the top. Re-arming a schedule cancels its          │
│   previous recurring entry, so at most one live recurring entry exists       │
│   per schedule. Once cancelled entries outnumber live ones the heap is       │
│   rebuilt from the live entries.                                             │
└──────────────────────────────────────────────────────────────────────────────┘

Not thread-safe on its own; the service calls it under its lock.
"""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from report_scheduler.models import ScheduleExecution


class TimerKind(str, Enum):
    RECURRING = "recurring"
    RETRY = "retry"


@dataclass(eq=False)
class TimerEntry:
    """One pending fire."""

    kind: TimerKind
    schedule_id: str
    fire_at: datetime
    seq: int
    execution: ScheduleExecution | None = None
    cancelled: bool = field(default=False)

    def cancel(self) -> None:
        self.cancelled = True


class TimerHeap:
    """Min-heap of fire events with in-place invalidation.

    Example:
        >>> timers = TimerHeap()
        >>> timers.arm("s-1", now + timedelta(minutes=5), now)
        >>> timers.clear("s-1")
        >>> timers.clear("s-1")  # no-op
        >>> timers.pop_due(now + timedelta(minutes=10))
        []
    """

    def __init__(self) -> None:
        self._heap: list[tuple[datetime, int, TimerEntry]] = []
        self._seq = itertools.count()
        self._recurring: dict[str, TimerEntry] = {}
        self._retries: dict[str, set[TimerEntry]] = {}
        self._dead = 0

    def arm(self, schedule_id: str, fire_at: datetime, now: datetime) -> TimerEntry | None:
        """Arm the recurring timer of a schedule.

        Returns None without arming when ``fire_at`` is not in the future;
        the caller must recompute the fire time before re-arming.
        """
        if fire_at <= now:
            return None
        self.clear(schedule_id)
        entry = TimerEntry(TimerKind.RECURRING, schedule_id, fire_at, next(self._seq))
        self._recurring[schedule_id] = entry
        heapq.heappush(self._heap, (fire_at, entry.seq, entry))
        return entry

    def arm_retry(self, execution: ScheduleExecution, fire_at: datetime) -> TimerEntry:
        """Arm a one-shot retry. A fire time in the past fires on the next poll."""
        entry = TimerEntry(
            TimerKind.RETRY, execution.schedule_id, fire_at, next(self._seq), execution
        )
        self._retries.setdefault(execution.schedule_id, set()).add(entry)
        heapq.heappush(self._heap, (fire_at, entry.seq, entry))
        return entry

    def clear(self, schedule_id: str) -> bool:
        """Cancel the recurring timer of a schedule. Idempotent.

        Returns:
            True if a live timer was cancelled
        """
        entry = self._recurring.pop(schedule_id, None)
        if entry is None:
            return False
        self._kill(entry)
        self._maybe_compact()
        return True

    def clear_all_for(self, schedule_id: str) -> int:
        """Cancel the recurring timer and every pending retry of a schedule."""
        cleared = int(self.clear(schedule_id))
        for entry in self._retries.pop(schedule_id, set()):
            if not entry.cancelled:
                self._kill(entry)
                cleared += 1
        self._maybe_compact()
        return cleared

    def clear_recurring(self) -> int:
        """Cancel every recurring timer; pending retries stay armed."""
        entries = list(self._recurring.values())
        self._recurring.clear()
        for entry in entries:
            self._kill(entry)
        self._maybe_compact()
        return len(entries)

    def has_timer(self, schedule_id: str) -> bool:
        return schedule_id in self._recurring

    def next_fire_at(self, schedule_id: str) -> datetime | None:
        entry = self._recurring.get(schedule_id)
        return entry.fire_at if entry else None

    def pending_retries(self, schedule_id: str | None = None) -> int:
        if schedule_id is not None:
            return sum(1 for e in self._retries.get(schedule_id, ()) if not e.cancelled)
        return sum(1 for entries in self._retries.values() for e in entries if not e.cancelled)

    def retry_executions(self) -> list[ScheduleExecution]:
        """Executions waiting on a live retry entry."""
        return [
            e.execution
            for entries in self._retries.values()
            for e in entries
            if not e.cancelled and e.execution is not None
        ]

    def pop_due(self, now: datetime) -> list[TimerEntry]:
        """Remove and return every live entry due at ``now``, in fire order."""
        due: list[TimerEntry] = []
        while self._heap and self._heap[0][0] <= now:
            _, _, entry = heapq.heappop(self._heap)
            if entry.cancelled:
                self._dead -= 1
                continue
            if entry.kind is TimerKind.RECURRING:
                if self._recurring.get(entry.schedule_id) is entry:
                    del self._recurring[entry.schedule_id]
            else:
                retries = self._retries.get(entry.schedule_id)
                if retries is not None:
                    retries.discard(entry)
                    if not retries:
                        del self._retries[entry.schedule_id]
            due.append(entry)
        return due

    @property
    def heap_size(self) -> int:
        """Entries physically on the heap, cancelled ones included."""
        return len(self._heap)

    def _kill(self, entry: TimerEntry) -> None:
        entry.cancel()
        self._dead += 1

    def _maybe_compact(self) -> None:
        if self._dead <= len(self._heap) - self._dead:
            return
        self._heap = [item for item in self._heap if not item[2].cancelled]
        heapq.heapify(self._heap)
        self._dead = 0

    def __len__(self) -> int:
        """Live entries."""
        return len(self._heap) - self._dead
