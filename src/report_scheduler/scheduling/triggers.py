"""Event and threshold trigger matching.

Event-driven and threshold schedules have no clock. They fire when the
service is notified of a module event or a metric observation that
matches one of their triggers. A threshold trigger fires at most once
per ``check_interval`` minutes for the same schedule and metric, so a
metric that stays over its threshold does not enqueue on every sample.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from report_scheduler.enums import ScheduleType
from report_scheduler.models import ReportSchedule


def match_event(
    schedules: Iterable[ReportSchedule],
    module: str,
    event: str,
    payload: dict[str, Any] | None = None,
) -> list[ReportSchedule]:
    """Active event-driven schedules with a trigger matching the event."""
    return [
        s
        for s in schedules
        if s.is_active
        and s.schedule_type == ScheduleType.EVENT_DRIVEN
        and any(t.matches(module, event, payload) for t in s.event_triggers)
    ]


class ThresholdGate:
    """Tracks when each (schedule, metric) pair last fired."""

    def __init__(self) -> None:
        self._last_fired: dict[tuple[str, str], datetime] = {}

    def match(
        self,
        schedules: Iterable[ReportSchedule],
        metric: str,
        value: float,
        now: datetime,
    ) -> list[ReportSchedule]:
        """Active threshold schedules whose trigger holds and whose gate is open.

        Matching schedules have their gate closed for ``check_interval``.
        """
        fired = []
        for schedule in schedules:
            if not schedule.is_active or schedule.schedule_type != ScheduleType.THRESHOLD:
                continue
            for trigger in schedule.threshold_triggers:
                if not trigger.matches(metric, value):
                    continue
                key = (schedule.id, metric)
                last = self._last_fired.get(key)
                if last is not None and now - last < timedelta(minutes=trigger.check_interval):
                    continue
                self._last_fired[key] = now
                fired.append(schedule)
                break
        return fired

    def forget(self, schedule_id: str) -> None:
        for key in [k for k in self._last_fired if k[0] == schedule_id]:
            del self._last_fired[key]
