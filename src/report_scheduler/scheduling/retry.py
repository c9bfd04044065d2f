"""Retry controller - exponential backoff for failed executions.

Delay = retry_delay * (backoff_multiplier ** retry_attempt), in minutes,
where ``retry_attempt`` is the attempt number of the execution that just
failed (0 for the original run). A retry is only planned while
``retry_attempt < max_retries``.

Example:
    >>> backoff = ExponentialBackoff(max_retries=2, base_delay=1.0, multiplier=2.0)
    >>> [backoff.next_delay(a) for a in range(2)]
    [datetime.timedelta(seconds=60), datetime.timedelta(seconds=120)]
    >>> backoff.should_retry(2)
    False
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from report_scheduler.errors import RetryExhaustedError
from report_scheduler.models import RetryConfig, ScheduleExecution


@dataclass
class ExponentialBackoff:
    """Exponential backoff without jitter.

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in minutes
        multiplier: Exponential multiplier (>= 1)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> ExponentialBackoff:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.retry_delay,
            multiplier=config.backoff_multiplier,
        )

    def next_delay(self, attempt: int) -> timedelta:
        """Delay before retrying an execution whose attempt number was ``attempt``."""
        return timedelta(minutes=self.base_delay * (self.multiplier ** attempt))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


@dataclass
class RetryPlan:
    """Outcome of :meth:`RetryController.plan`.

    Exactly one of ``execution``/``exhausted`` is set when the schedule
    has a retry policy; neither is set when it has none.
    """

    execution: ScheduleExecution | None = None
    fire_at: datetime | None = None
    delay: timedelta | None = None
    exhausted: RetryExhaustedError | None = None


class RetryController:
    """Decides whether and when a failed execution is retried."""

    def plan(
        self,
        failed: ScheduleExecution,
        retry_config: RetryConfig | None,
        now: datetime,
    ) -> RetryPlan:
        """Plan the retry of ``failed``.

        The returned retry execution is new (fresh ID, ``retry_attempt + 1``,
        pending); ``failed`` itself is never modified here.
        """
        if retry_config is None:
            return RetryPlan()

        backoff = ExponentialBackoff.from_config(retry_config)
        if not backoff.should_retry(failed.retry_attempt):
            return RetryPlan(
                exhausted=RetryExhaustedError(
                    failed.id, failed.retry_attempt, retry_config.max_retries
                ).with_context(schedule_id=failed.schedule_id, tenant_id=failed.tenant_id)
            )

        delay = backoff.next_delay(failed.retry_attempt)
        return RetryPlan(
            execution=failed.retry(created_at=now),
            fire_at=now + delay,
            delay=delay,
        )
