"""Schedule store - in-memory registry and next-execution computation.

This module holds schedule definitions keyed by ID and computes when
each one should next fire, using croniter for cron expressions.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULE STORE                                                               │
│                                                                               │
│  Responsibility: schedule registry + next-execution computation              │
│                                                                               │
│   CRUD Operations:                                                            │
│   ├── add(schedule)                                                          │
│   ├── get(id) → ReportSchedule | None                                        │
│   ├── replace(schedule)                                                      │
│   ├── remove(id) → ReportSchedule | None                                     │
│   └── list(filters...) → list[ReportSchedule]                                │
│                                                                               │
│   Scheduling Operations:                                                      │
│   └── compute_next_execution(schedule, now) → datetime | None                │
│                                                                               │
│  Next execution:                                                              │
│  - inactive, event_driven, threshold → None                                  │
│  - cron     → croniter in schedule timezone (default UTC), returned in UTC   │
│  - interval → now + interval minutes                                         │
│  - clamped to start_date, None past end_date or once max_executions is hit   │
└──────────────────────────────────────────────────────────────────────────────┘

The store does no locking of its own; SchedulingService serializes all
access under its bookkeeping lock.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from croniter import croniter

from report_scheduler.enums import ScheduleType
from report_scheduler.logging import get_logger
from report_scheduler.models import ReportSchedule, ensure_utc

from .protocol import CronEvaluator

logger = get_logger(__name__)


class CroniterEvaluator:
    """Cron evaluation backed by croniter.

    Example:
        >>> evaluator = CroniterEvaluator()
        >>> evaluator.next_fire("0 8 * * *", "UTC", datetime(2025, 1, 1, tzinfo=UTC))
        datetime.datetime(2025, 1, 1, 8, 0, tzinfo=datetime.timezone.utc)
    """

    def next_fire(self, expression: str, timezone: str, after: datetime) -> datetime:
        """Compute next fire time in ``timezone``, returned in UTC."""
        if after.tzinfo is None:
            after = after.replace(tzinfo=UTC)
        after_local = after.astimezone(ZoneInfo(timezone or "UTC"))
        next_run = croniter(expression, after_local).get_next(datetime)
        return next_run.astimezone(UTC)

    def is_valid(self, expression: str) -> bool:
        return croniter.is_valid(expression)


class ScheduleStore:
    """Authoritative in-memory registry of schedule definitions."""

    def __init__(self, cron: CronEvaluator | None = None) -> None:
        self.cron = cron or CroniterEvaluator()
        self._schedules: dict[str, ReportSchedule] = {}

    # === CRUD ===

    def add(self, schedule: ReportSchedule) -> None:
        self._schedules[schedule.id] = schedule

    def get(self, schedule_id: str) -> ReportSchedule | None:
        return self._schedules.get(schedule_id)

    def replace(self, schedule: ReportSchedule) -> None:
        self._schedules[schedule.id] = schedule

    def remove(self, schedule_id: str) -> ReportSchedule | None:
        return self._schedules.pop(schedule_id, None)

    def __contains__(self, schedule_id: object) -> bool:
        return schedule_id in self._schedules

    def __len__(self) -> int:
        return len(self._schedules)

    def list(
        self,
        *,
        report_id: str | None = None,
        tenant_id: str | None = None,
        is_active: bool | None = None,
        schedule_type: ScheduleType | str | None = None,
    ) -> list[ReportSchedule]:
        """List schedules in insertion order, optionally filtered."""
        schedules = list(self._schedules.values())
        if report_id:
            schedules = [s for s in schedules if s.report_id == report_id]
        if tenant_id:
            schedules = [s for s in schedules if s.tenant_id == tenant_id]
        if is_active is not None:
            schedules = [s for s in schedules if s.is_active == is_active]
        if schedule_type:
            wanted = ScheduleType(schedule_type)
            schedules = [s for s in schedules if s.schedule_type == wanted]
        return schedules

    def count_active(self) -> int:
        return sum(1 for s in self._schedules.values() if s.is_active)

    # === Scheduling ===

    def compute_next_execution(
        self, schedule: ReportSchedule, now: datetime
    ) -> datetime | None:
        """Compute when ``schedule`` should next fire after ``now``.

        Args:
            schedule: Schedule to compute for
            now: Reference time (aware UTC)

        Returns:
            Next fire time in UTC, or None when the schedule has no
            predictable next time
        """
        if not schedule.is_active or not schedule.is_timer_based:
            return None
        if schedule.executions_exhausted:
            return None

        config = schedule.schedule_config
        start = ensure_utc(config.start_date) if config.start_date else None
        after = start if start is not None and start > now else now

        if schedule.schedule_type == ScheduleType.CRON:
            if not config.cron:
                return None
            next_run = self.cron.next_fire(config.cron, config.timezone or "UTC", after)
        else:
            if not config.interval:
                return None
            # A future start date is itself the first interval fire
            next_run = after if after > now else now + timedelta(minutes=config.interval)

        if config.end_date is not None and next_run > ensure_utc(config.end_date):
            logger.info(
                "schedule_window_ended",
                schedule_id=schedule.id,
                end_date=config.end_date.isoformat(),
            )
            return None
        return next_run

