"""Collaborator protocols for the scheduling engine.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER COLLABORATORS                                                      │
│                                                                               │
│   ┌─────────────────┐   tick()    ┌──────────────────────┐                   │
│   │ SchedulerBackend│ ──────────► │  SchedulingService   │                   │
│   │ (timing)        │             │                      │                   │
│   └─────────────────┘             │  ┌────────────────┐  │  execute()        │
│                                   │  │ Queue processor│──┼──────────► Report │
│   ┌─────────────────┐ callback    │  └────────────────┘  │           Engine  │
│   │ TriggerRegistry │ ──────────► │                      │                   │
│   │ (events/metrics)│             │  ┌────────────────┐  │  next_fire()      │
│   └─────────────────┘             │  │ Schedule store │──┼──────────► Cron   │
│                                   │  └────────────────┘  │           Eval.   │
│                                   └──────────┬───────────┘                   │
│                                              │ save_*()                      │
│                                              ▼                               │
│                                     SchedulePersistence                       │
│                                                                               │
│  Responsibility Split:                                                        │
│  - Backend: controls WHEN ticks happen                                       │
│  - Service: controls WHAT happens on each tick                               │
│  - Engine, evaluator, registry, persistence: external, behind protocols      │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from report_scheduler.models import ReportResult, ReportSchedule, ScheduleExecution


TickCallback = Callable[[], Awaitable[None]]
TriggerCallback = Callable[[str, str], None]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable scheduler timing backends.

    A backend is responsible ONLY for timing: calling the tick callback
    at the specified interval. The callback must be awaited on an event
    loop that stays alive between ticks, because running executions are
    tasks on that loop.

    Implementations:
        - AsyncioSchedulerBackend: ticks inside the caller's running loop (default)
        - ThreadSchedulerBackend: private loop in a daemon thread
        - APSchedulerBackend: APScheduler AsyncIOScheduler (requires [apscheduler] extra)
    """

    name: str

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 1.0,
    ) -> None:
        """Start the tick loop."""
        ...

    def stop(self) -> None:
        """Stop the tick loop. Idempotent."""
        ...

    def health(self) -> dict[str, Any]:
        """Return backend health status.

        Returns:
            dict with at least:
                - healthy: bool, whether backend is running
                - backend: str, backend name
                - tick_count: int, number of ticks executed
                - last_tick: str | None, ISO timestamp of last tick
        """
        ...


@runtime_checkable
class ReportEngine(Protocol):
    """Runs a report. Raising any exception marks the execution failed.

    An exception with a ``code`` attribute has that code recorded in the
    execution's error.
    """

    async def execute(
        self,
        report_id: str,
        tenant_id: str,
        parameters: dict[str, Any],
    ) -> ReportResult:
        ...


@runtime_checkable
class CronEvaluator(Protocol):
    """Computes the next trigger time of a cron expression."""

    def next_fire(self, expression: str, timezone: str, after: datetime) -> datetime:
        """Next fire strictly after ``after``, as an aware UTC datetime."""
        ...

    def is_valid(self, expression: str) -> bool:
        ...


@runtime_checkable
class TriggerRegistry(Protocol):
    """External event bus / metric monitor.

    ``register`` receives the schedule (for its event or threshold
    triggers) and a callback taking ``(schedule_id, source)`` to invoke
    when conditions are met.
    """

    def register(self, schedule: ReportSchedule, callback: TriggerCallback) -> None:
        ...

    def unregister(self, schedule_id: str) -> None:
        ...


@runtime_checkable
class SchedulePersistence(Protocol):
    """Durable storage kept in step with the in-memory store."""

    def save_schedule(self, schedule: ReportSchedule) -> None:
        ...

    def delete_schedule(self, schedule_id: str) -> None:
        ...

    def save_execution(self, execution: ScheduleExecution) -> None:
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }
