"""Schedule definition validation.

Collects every violated rule before raising, so callers can fix a
definition in one round trip. Runs on create and on the merged result of
an update; nothing is stored when it raises.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from report_scheduler.enums import (
    SUPPORTED_OUTPUT_FORMATS,
    ResourcePriority,
    ScheduleType,
    ThresholdOperator,
)
from report_scheduler.errors import ValidationError
from report_scheduler.models import (
    EventTrigger,
    OutputConfig,
    ScheduleConfig,
    ThresholdTrigger,
    ensure_utc,
)

_OPERATORS = frozenset(op.value for op in ThresholdOperator)
_PRIORITIES = frozenset(p.value for p in ResourcePriority)
_TYPES = frozenset(t.value for t in ScheduleType)


@dataclass
class ScheduleDefinition:
    """The validated subset of a schedule, shared by create and update."""

    report_id: str
    tenant_id: str
    schedule_type: ScheduleType | str
    schedule_config: ScheduleConfig
    event_triggers: list[EventTrigger] = field(default_factory=list)
    threshold_triggers: list[ThresholdTrigger] = field(default_factory=list)
    output_config: OutputConfig = field(default_factory=OutputConfig)
    resource_priority: ResourcePriority | str = ResourcePriority.NORMAL


def is_valid_timezone(name: str) -> bool:
    """True if ``name`` resolves to an IANA timezone."""
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def collect_errors(
    definition: ScheduleDefinition,
    cron_is_valid: Callable[[str], bool] | None = None,
) -> list[str]:
    """Return every rule the definition violates (empty when valid)."""
    errors: list[str] = []
    config = definition.schedule_config

    if not definition.report_id or not definition.tenant_id:
        errors.append("Report ID and Tenant ID are required")

    schedule_type = getattr(definition.schedule_type, "value", definition.schedule_type)
    if schedule_type not in _TYPES:
        errors.append(f"Unknown schedule type: {schedule_type}")

    if schedule_type == ScheduleType.CRON.value:
        if not config.cron:
            errors.append("Cron expression is required for cron schedules")
        elif cron_is_valid is not None and not cron_is_valid(config.cron):
            errors.append(f"Invalid cron expression: {config.cron}")

    if schedule_type == ScheduleType.INTERVAL.value:
        if config.interval is None:
            errors.append("Interval is required for interval schedules")
        elif config.interval <= 0:
            errors.append("Interval must be greater than zero")

    if schedule_type == ScheduleType.EVENT_DRIVEN.value and not definition.event_triggers:
        errors.append("Event triggers are required for event-driven schedules")

    if schedule_type == ScheduleType.THRESHOLD.value:
        if not definition.threshold_triggers:
            errors.append("Threshold triggers are required for threshold schedules")
        for trigger in definition.threshold_triggers:
            if trigger.operator not in _OPERATORS:
                errors.append(f"Unsupported threshold operator: {trigger.operator}")

    if config.timezone and not is_valid_timezone(config.timezone):
        errors.append(f"Invalid timezone: {config.timezone}")

    for fmt in definition.output_config.formats:
        if fmt not in SUPPORTED_OUTPUT_FORMATS:
            errors.append(f"Unsupported output format: {fmt}")

    priority = getattr(definition.resource_priority, "value", definition.resource_priority)
    if priority not in _PRIORITIES:
        errors.append(f"Unknown resource priority: {priority}")

    if (
        config.start_date
        and config.end_date
        and ensure_utc(config.start_date) >= ensure_utc(config.end_date)
    ):
        errors.append("Start date must be before end date")

    if config.max_executions is not None and config.max_executions <= 0:
        errors.append("Max executions must be greater than zero")

    retry = config.retry_config
    if retry is not None:
        if retry.max_retries < 0:
            errors.append("Retry max_retries must be zero or greater")
        if retry.retry_delay < 0:
            errors.append("Retry delay must be zero or greater")
        if retry.backoff_multiplier < 1:
            errors.append("Retry backoff multiplier must be at least 1")

    return errors


def validate_definition(
    definition: ScheduleDefinition,
    cron_is_valid: Callable[[str], bool] | None = None,
) -> None:
    """Raise :class:`ValidationError` listing all violations, if any."""
    errors = collect_errors(definition, cron_is_valid)
    if errors:
        raise ValidationError(errors)
