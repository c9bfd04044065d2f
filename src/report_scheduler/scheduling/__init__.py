"""Scheduling package for report-scheduler.

Manifesto:
    A report that must land in an inbox every Monday at 08:00 Berlin time
    needs more than ``time.sleep()`` in a loop. It needs one timer per
    schedule that survives updates, a bounded execution queue so a burst
    of fires cannot overload the report engine, retries with backoff,
    and a way to push bulk work into the night. The scheduling package
    provides all of that behind one service and pluggable timing backends.

┌──────────────────────────────────────────────────────────────────────────────┐
│  REPORT SCHEDULER                                                             │
│                                                                               │
│  Quick Start:                                                                 │
│  ┌──────────────────────────────────────────────────────────────────────┐   │
│  │   from report_scheduler.scheduling import create_scheduler          │   │
│  │   from report_scheduler.models import ScheduleConfig, ScheduleCreate│   │
│  │                                                                      │   │
│  │   service = create_scheduler(engine)                                 │   │
│  │   service.create_schedule(ScheduleCreate(                           │   │
│  │       report_id="sales-weekly",                                      │   │
│  │       tenant_id="acme",                                              │   │
│  │       schedule_type="cron",                                          │   │
│  │       schedule_config=ScheduleConfig(cron="0 8 * * MON"),           │   │
│  │   ))                                                                 │   │
│  │   service.start()                                                    │   │
│  └──────────────────────────────────────────────────────────────────────┘   │
│                                                                               │
│  Architecture:                                                                │
│   ┌──────────────┐    tick()    ┌──────────────────────────────────────┐    │
│   │  Backend     │ ───────────► │   SchedulingService                  │    │
│   │ (timing)     │              │                                      │    │
│   └──────────────┘              │  ScheduleStore   TimerHeap           │    │
│                                 │  ExecutionQueue  RetryController     │    │
│   Backends:                     │  OffPeakReorderer ThresholdGate      │    │
│   • Asyncio (default)           │              │                       │    │
│   • Thread                      │              ▼                       │    │
│   • APScheduler                 │        ReportEngine                  │    │
│                                 └──────────────────────────────────────┘    │
│                                                                               │
│  Dependencies:                                                                │
│  - croniter: Cron expression evaluation                                      │
│  - apscheduler: APScheduler backend (optional)                               │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    report-scheduler, scheduling, cron, execution-queue, retry,
    off-peak, beat-as-poller, pluggable-backends
"""

from __future__ import annotations

from report_scheduler.logging import configure_logging
from report_scheduler.settings import SchedulerSettings, get_settings

# Backends
from .asyncio_backend import AsyncioSchedulerBackend

# Health
from .health import SchedulerHealthReport, check_scheduler_health
from .off_peak import OffPeakReorderer, OffPeakWindow

# Protocol
from .protocol import (
    BackendHealth,
    CronEvaluator,
    ReportEngine,
    SchedulePersistence,
    SchedulerBackend,
    TriggerRegistry,
)
from .queue import ExecutionQueue, priority_key
from .retry import ExponentialBackoff, RetryController, RetryPlan

# Service
from .service import SchedulerHealth, SchedulerStats, SchedulingService
from .store import CroniterEvaluator, ScheduleStore
from .thread_backend import ThreadSchedulerBackend
from .timers import TimerEntry, TimerHeap, TimerKind
from .triggers import ThresholdGate, match_event
from .validation import ScheduleDefinition, collect_errors, validate_definition

# Optional backends (lazy imports, require extras)
# APSchedulerBackend:  pip install report-scheduler[apscheduler]


def __getattr__(name: str):  # noqa: N807
    """Lazy import optional backends to avoid ImportError when extras are missing."""
    if name == "APSchedulerBackend":
        from .apscheduler_backend import APSchedulerBackend

        return APSchedulerBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Protocol
    "SchedulerBackend",
    "BackendHealth",
    "ReportEngine",
    "CronEvaluator",
    "TriggerRegistry",
    "SchedulePersistence",
    # Backends
    "AsyncioSchedulerBackend",
    "ThreadSchedulerBackend",
    "APSchedulerBackend",
    # Components
    "ScheduleStore",
    "CroniterEvaluator",
    "TimerHeap",
    "TimerEntry",
    "TimerKind",
    "ExecutionQueue",
    "priority_key",
    "ExponentialBackoff",
    "RetryController",
    "RetryPlan",
    "OffPeakWindow",
    "OffPeakReorderer",
    "ThresholdGate",
    "match_event",
    "ScheduleDefinition",
    "collect_errors",
    "validate_definition",
    # Service
    "SchedulingService",
    "SchedulerStats",
    "SchedulerHealth",
    # Health
    "check_scheduler_health",
    "SchedulerHealthReport",
    "create_scheduler",
]


def create_scheduler(
    engine: ReportEngine,
    *,
    backend: SchedulerBackend | None = None,
    settings: SchedulerSettings | None = None,
    trigger_registry: TriggerRegistry | None = None,
    persistence: SchedulePersistence | None = None,
    setup_logging: bool = False,
) -> SchedulingService:
    """Factory function to create a complete scheduling service.

    This is the recommended way to create a scheduler with all components
    properly wired together.

    Args:
        engine: Report engine that runs executions
        backend: Timing backend (default: AsyncioSchedulerBackend)
        settings: Tuning knobs (default: from environment)
        trigger_registry: External event bus / metric monitor (optional)
        persistence: Durable storage hooks (optional)
        setup_logging: Configure structlog from ``log_level``, ``json_logs``
            and ``service_name`` before building the service

    Returns:
        Configured SchedulingService

    Example:
        >>> scheduler = create_scheduler(engine, backend=ThreadSchedulerBackend())
        >>> scheduler.start()
    """
    settings = settings or get_settings()
    if setup_logging:
        configure_logging(
            level=settings.log_level,
            json_format=settings.json_logs,
            service=settings.service_name,
        )
    return SchedulingService(
        engine,
        backend=backend or AsyncioSchedulerBackend(),
        settings=settings,
        store=ScheduleStore(),
        trigger_registry=trigger_registry,
        persistence=persistence,
    )
