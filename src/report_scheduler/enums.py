"""
Shared enums for report scheduling.

String enums so values serialize as-is into logs, persistence rows and
API payloads.

STDLIB ONLY - NO PYDANTIC.
"""

from enum import Enum


class ScheduleType(str, Enum):
    """Trigger mechanism of a schedule. Mutually exclusive."""

    CRON = "cron"
    INTERVAL = "interval"
    EVENT_DRIVEN = "event_driven"
    THRESHOLD = "threshold"

    @property
    def is_timer_based(self) -> bool:
        """True for types driven by the wall clock (cron, interval)."""
        return self in (ScheduleType.CRON, ScheduleType.INTERVAL)


class ResourcePriority(str, Enum):
    """
    Execution priority of a schedule.

    The integer ``level`` is what the execution queue orders by
    (higher runs first).
    """

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def level(self) -> int:
        return _PRIORITY_LEVELS[self]

    @classmethod
    def coerce(cls, value: "ResourcePriority | str | None") -> "ResourcePriority":
        """Accept enum members or their string values; unknown values map to NORMAL."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.NORMAL


_PRIORITY_LEVELS = {
    ResourcePriority.LOW: 1,
    ResourcePriority.NORMAL: 2,
    ResourcePriority.HIGH: 3,
    ResourcePriority.CRITICAL: 4,
}


class ExecutionStatus(str, Enum):
    """
    Lifecycle of one execution attempt.

    pending -> running -> completed | failed | cancelled
    pending -> cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class ExecutionTrigger(str, Enum):
    """What caused an execution to be created."""

    TIMER = "timer"
    MANUAL = "manual"
    RETRY = "retry"
    EVENT = "event"
    THRESHOLD = "threshold"


class OutputFormat(str, Enum):
    """Export formats the report engine can produce."""

    PDF = "pdf"
    EXCEL = "excel"
    CSV = "csv"
    JSON = "json"


class DestinationType(str, Enum):
    """Delivery destinations. Opaque to the scheduler, passed through to the engine."""

    EMAIL = "email"
    FILE = "file"
    WEBHOOK = "webhook"
    STORAGE = "storage"


class ThresholdOperator(str, Enum):
    """Comparison operators allowed in threshold triggers."""

    GT = ">"
    LT = "<"
    EQ = "="
    GTE = ">="
    LTE = "<="


SUPPORTED_OUTPUT_FORMATS = frozenset(f.value for f in OutputFormat)


__all__ = [
    "ScheduleType",
    "ResourcePriority",
    "ExecutionStatus",
    "ExecutionTrigger",
    "OutputFormat",
    "DestinationType",
    "ThresholdOperator",
    "SUPPORTED_OUTPUT_FORMATS",
]
