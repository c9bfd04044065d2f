"""Off-peak window and queue reordering.

During off-peak hours the pending queue is stably re-sorted by
``(off_peak_only desc, priority desc)`` so executions of off-peak-only
schedules run first. Other executions are not held back, only
deprioritized. When the window closes the queue goes back to plain
priority order.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from report_scheduler.errors import ConfigError
from report_scheduler.logging import get_logger
from report_scheduler.models import ScheduleExecution

from .queue import ExecutionQueue, SortKey, priority_key

logger = get_logger(__name__)


class OffPeakWindow:
    """Local-hour window: off-peak when ``hour < end_hour`` or ``hour > start_hour``.

    With the defaults (start 22, end 6) that is 23:00-05:59.
    """

    def __init__(
        self,
        start_hour: int = 22,
        end_hour: int = 6,
        timezone: str | None = None,
    ) -> None:
        self.start_hour = start_hour
        self.end_hour = end_hour
        try:
            self.tz = ZoneInfo(timezone) if timezone else None
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown off-peak timezone: {timezone}", cause=e) from e

    def local_hour(self, now: datetime) -> int:
        # astimezone(None) converts to the host's local zone
        return now.astimezone(self.tz).hour

    def is_off_peak(self, now: datetime) -> bool:
        hour = self.local_hour(now)
        return hour < self.end_hour or hour > self.start_hour


class OffPeakReorderer:
    """Applies the off-peak ordering to an :class:`ExecutionQueue`.

    Args:
        window: When off-peak applies
        is_eligible: Whether an execution belongs to an off-peak-only schedule
    """

    def __init__(
        self,
        window: OffPeakWindow,
        is_eligible: Callable[[ScheduleExecution], bool],
    ) -> None:
        self.window = window
        self.is_eligible = is_eligible
        self.active = False
        self.reorder_count = 0

    def off_peak_key(self) -> SortKey:
        def key(execution: ScheduleExecution) -> tuple[bool, int]:
            return (not self.is_eligible(execution), -execution.priority)

        return key

    def apply(self, queue: ExecutionQueue, now: datetime) -> bool:
        """Re-sort ``queue`` for the window state at ``now``.

        Returns:
            True if the queue was re-sorted
        """
        if self.window.is_off_peak(now):
            if not self.active:
                logger.info("off_peak_window_opened", queue_size=len(queue))
            self.active = True
            queue.reorder(self.off_peak_key())
            self.reorder_count += 1
            return True

        if self.active:
            self.active = False
            queue.reorder(priority_key)
            logger.info("off_peak_window_closed", queue_size=len(queue))
            return True
        return False
