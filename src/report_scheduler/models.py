"""Scheduling data model.

Dataclass representations of schedule definitions, execution attempts
and queue statistics, plus the create/update DTOs the service accepts.

Tags:
    report-scheduler, models, scheduling, dataclasses
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .enums import (
    ExecutionStatus,
    ExecutionTrigger,
    ResourcePriority,
    ScheduleType,
    ThresholdOperator,
)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Schedule configuration
# ---------------------------------------------------------------------------


@dataclass
class RetryConfig:
    """Retry policy. ``retry_delay`` is in minutes."""

    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_multiplier: float = 2.0


@dataclass
class ScheduleConfig:
    """Trigger parameters of a schedule."""

    cron: str | None = None
    interval: float | None = None  # minutes
    timezone: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    off_peak_only: bool = False
    max_executions: int | None = None
    retry_config: RetryConfig | None = None


_OPERATORS = {
    ThresholdOperator.GT: operator.gt,
    ThresholdOperator.LT: operator.lt,
    ThresholdOperator.EQ: operator.eq,
    ThresholdOperator.GTE: operator.ge,
    ThresholdOperator.LTE: operator.le,
}


@dataclass
class EventTrigger:
    """Fire when ``module`` emits ``event`` with a payload matching ``conditions``."""

    module: str
    event: str
    conditions: dict[str, Any] = field(default_factory=dict)

    def matches(self, module: str, event: str, payload: dict[str, Any] | None = None) -> bool:
        if module != self.module or event != self.event:
            return False
        payload = payload or {}
        return all(
            key in payload and payload[key] == expected
            for key, expected in self.conditions.items()
        )


@dataclass
class ThresholdTrigger:
    """Fire when ``metric`` compared with ``value`` through ``operator`` holds."""

    metric: str
    operator: str
    value: float
    check_interval: float = 5.0  # minutes

    def matches(self, metric: str, observed: float) -> bool:
        if metric != self.metric:
            return False
        compare = _OPERATORS[ThresholdOperator(self.operator)]
        return bool(compare(observed, self.value))


@dataclass
class Destination:
    type: str
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class FileNaming:
    pattern: str = "report_{date}_{time}_{reportName}"
    include_timestamp: bool = True
    include_report_id: bool = False


@dataclass
class OutputConfig:
    """Export formats and delivery destinations, passed through to the engine."""

    formats: list[str] = field(default_factory=lambda: ["pdf"])
    destinations: list[Destination] = field(default_factory=list)
    file_naming: FileNaming = field(default_factory=FileNaming)

    def to_dict(self) -> dict[str, Any]:
        return {
            "formats": list(self.formats),
            "destinations": [{"type": d.type, "config": dict(d.config)} for d in self.destinations],
            "file_naming": {
                "pattern": self.file_naming.pattern,
                "include_timestamp": self.file_naming.include_timestamp,
                "include_report_id": self.file_naming.include_report_id,
            },
        }


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


@dataclass
class ReportSchedule:
    """A persistent definition of when and how a report repeats."""

    id: str
    report_id: str
    tenant_id: str
    name: str = ""
    description: str | None = None
    schedule_type: ScheduleType = ScheduleType.CRON
    schedule_config: ScheduleConfig = field(default_factory=ScheduleConfig)
    event_triggers: list[EventTrigger] = field(default_factory=list)
    threshold_triggers: list[ThresholdTrigger] = field(default_factory=list)
    output_config: OutputConfig = field(default_factory=OutputConfig)
    resource_priority: ResourcePriority = ResourcePriority.NORMAL
    is_active: bool = True
    created_by: str | None = None
    last_execution: datetime | None = None
    next_execution: datetime | None = None
    execution_count: int = 0
    success_count: int = 0
    error_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_timer_based(self) -> bool:
        return self.schedule_type.is_timer_based

    @property
    def executions_exhausted(self) -> bool:
        """True once ``max_executions`` has been reached."""
        cap = self.schedule_config.max_executions
        return cap is not None and self.execution_count >= cap


@dataclass
class ScheduleCreate:
    """DTO for creating a new schedule."""

    report_id: str
    tenant_id: str
    schedule_type: ScheduleType | str = ScheduleType.CRON
    name: str = ""
    description: str | None = None
    schedule_config: ScheduleConfig = field(default_factory=ScheduleConfig)
    event_triggers: list[EventTrigger] = field(default_factory=list)
    threshold_triggers: list[ThresholdTrigger] = field(default_factory=list)
    output_config: OutputConfig = field(default_factory=OutputConfig)
    resource_priority: ResourcePriority | str = ResourcePriority.NORMAL
    is_active: bool = True
    created_by: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScheduleUpdate:
    """DTO for updating a schedule. ``None`` fields are left unchanged."""

    name: str | None = None
    description: str | None = None
    schedule_type: ScheduleType | str | None = None
    schedule_config: ScheduleConfig | None = None
    event_triggers: list[EventTrigger] | None = None
    threshold_triggers: list[ThresholdTrigger] | None = None
    output_config: OutputConfig | None = None
    resource_priority: ResourcePriority | str | None = None
    is_active: bool | None = None
    metadata: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


@dataclass
class ExecutionErrorInfo:
    message: str
    stack: str = ""
    code: str = "UNKNOWN"


@dataclass
class ResourceUsage:
    """Observability only; not enforced as limits."""

    cpu_time: float = 0.0
    memory_peak: int = 0
    disk_io: int = 0


@dataclass
class OutputFile:
    format: str
    path: str
    size: int = 0
    url: str | None = None


@dataclass
class ScheduleExecution:
    """One attempt to run a schedule's report."""

    id: str
    schedule_id: str
    report_id: str
    tenant_id: str
    priority: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger: ExecutionTrigger = ExecutionTrigger.TIMER
    queue_position: int | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    execution_time: float | None = None  # milliseconds
    record_count: int | None = None
    output_files: list[OutputFile] = field(default_factory=list)
    retry_attempt: int = 0
    error: ExecutionErrorInfo | None = None
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    retries_exhausted: bool = False

    @classmethod
    def for_schedule(
        cls,
        schedule: ReportSchedule,
        priority: ResourcePriority | str | None = None,
        *,
        trigger: ExecutionTrigger = ExecutionTrigger.TIMER,
        created_at: datetime | None = None,
    ) -> ScheduleExecution:
        """New pending execution copying the schedule's identifiers."""
        level = ResourcePriority.coerce(priority or schedule.resource_priority).level
        return cls(
            id=new_id(),
            schedule_id=schedule.id,
            report_id=schedule.report_id,
            tenant_id=schedule.tenant_id,
            priority=level,
            trigger=trigger,
            created_at=created_at,
        )

    def retry(self, created_at: datetime | None = None) -> ScheduleExecution:
        """A brand-new pending execution for the next retry attempt."""
        return ScheduleExecution(
            id=new_id(),
            schedule_id=self.schedule_id,
            report_id=self.report_id,
            tenant_id=self.tenant_id,
            priority=self.priority,
            trigger=ExecutionTrigger.RETRY,
            retry_attempt=self.retry_attempt + 1,
            created_at=created_at,
        )


@dataclass
class ReportResult:
    """What the report engine hands back on success."""

    record_count: int = 0
    output_files: list[OutputFile] = field(default_factory=list)
    resource_usage: ResourceUsage | None = None


@dataclass
class QueueStats:
    """Queue monitoring snapshot."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total_execution_time: float = 0.0
    average_execution_time: float = 0.0
    peak_queue_size: int = 0
    current_queue_size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "total_execution_time": self.total_execution_time,
            "average_execution_time": self.average_execution_time,
            "peak_queue_size": self.peak_queue_size,
            "current_queue_size": self.current_queue_size,
        }


__all__ = [
    "utc_now",
    "new_id",
    "ensure_utc",
    "RetryConfig",
    "ScheduleConfig",
    "EventTrigger",
    "ThresholdTrigger",
    "Destination",
    "FileNaming",
    "OutputConfig",
    "ReportSchedule",
    "ScheduleCreate",
    "ScheduleUpdate",
    "ExecutionErrorInfo",
    "ResourceUsage",
    "OutputFile",
    "ScheduleExecution",
    "ReportResult",
    "QueueStats",
]
