"""Scheduler health checks.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER HEALTH MONITORING                                                  │
│                                                                               │
│  Health Checks:                                                               │
│  1. Backend Health: Is the timing backend running?                           │
│  2. Tick Health: Are ticks happening at expected intervals?                  │
│  3. Queue Health: Is the pending queue draining?                             │
│  4. Execution Health: Is the failure rate acceptable?                        │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from report_scheduler.logging import get_logger

if TYPE_CHECKING:
    from .service import SchedulingService

logger = get_logger(__name__)


@dataclass
class SchedulerHealthReport:
    """Complete scheduler health report."""

    healthy: bool
    checks: dict[str, bool] = field(default_factory=dict)
    backend: dict[str, Any] = field(default_factory=dict)
    schedules: dict[str, int] = field(default_factory=dict)
    queue: dict[str, Any] = field(default_factory=dict)
    timing: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "checks": self.checks,
            "backend": self.backend,
            "schedules": self.schedules,
            "queue": self.queue,
            "timing": self.timing,
            "warnings": self.warnings,
            "errors": self.errors,
        }


def check_scheduler_health(
    service: SchedulingService,
    tick_age_threshold_seconds: float = 60.0,
    queue_backlog_threshold: int = 100,
    failure_rate_threshold: float = 0.1,
) -> SchedulerHealthReport:
    """Comprehensive scheduler health check.

    Args:
        service: SchedulingService to check
        tick_age_threshold_seconds: Max age of last tick before warning
        queue_backlog_threshold: Pending executions before warning
        failure_rate_threshold: Failed / finished ratio before warning

    Returns:
        SchedulerHealthReport with all checks
    """
    report = SchedulerHealthReport(healthy=True)
    now = service.clock()

    # === Backend Health ===
    try:
        backend_health = service.backend.health()
        report.backend = backend_health
        is_healthy = backend_health.get("healthy", False)
        report.checks["backend_running"] = is_healthy
        if not is_healthy:
            report.healthy = False
            report.errors.append("Backend is not running")
    except Exception as e:
        report.checks["backend_running"] = False
        report.healthy = False
        report.errors.append(f"Backend health check failed: {e}")

    # === Tick Health ===
    stats = service.get_stats()
    last_tick = stats.last_tick

    if last_tick:
        tick_age = (now - last_tick).total_seconds()
        report.timing["last_tick_age_seconds"] = tick_age
        report.timing["last_tick"] = last_tick.isoformat()

        tick_ok = tick_age < tick_age_threshold_seconds
        report.checks["tick_recent"] = tick_ok
        if not tick_ok:
            report.warnings.append(
                f"Last tick was {tick_age:.1f}s ago (threshold: {tick_age_threshold_seconds}s)"
            )
    else:
        report.checks["tick_recent"] = False
        if service.is_running:
            report.warnings.append("No ticks recorded yet")

    report.timing["tick_count"] = stats.tick_count

    # === Schedules ===
    report.schedules["active"] = len(service.list_schedules(is_active=True))
    report.schedules["timer_fires"] = stats.timer_fires
    report.schedules["fires_skipped"] = stats.fires_skipped

    # === Queue ===
    queue_stats = service.get_queue_stats()
    report.queue = queue_stats.to_dict()
    backlog_ok = queue_stats.pending < queue_backlog_threshold
    report.checks["queue_draining"] = backlog_ok
    if not backlog_ok:
        report.warnings.append(
            f"Queue backlog: {queue_stats.pending} pending "
            f"(threshold: {queue_backlog_threshold})"
        )

    # === Failure rate ===
    finished = queue_stats.completed + queue_stats.failed
    if finished > 10 and queue_stats.failed / finished > failure_rate_threshold:
        report.warnings.append(
            f"High failure rate: {queue_stats.failed}/{finished} "
            f"({queue_stats.failed / finished * 100:.1f}%)"
        )
    if stats.retries_exhausted:
        report.warnings.append(f"{stats.retries_exhausted} execution(s) exhausted retries")

    if report.errors:
        report.healthy = False

    if report.warnings:
        logger.warning("scheduler_health_degraded", warnings=report.warnings)
    return report
