"""Scheduling service - main orchestrator.

The SchedulingService owns every piece of scheduler state (schedule
store, timer heap, execution queue, running set, history) and is driven
by a backend that calls :meth:`SchedulingService.tick` at a fixed
interval. Several independent instances can live in one process.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULING SERVICE ARCHITECTURE                                              │
│                                                                               │
│   Backend ──tick()──►  1. fire_due_timers()   recurring fires + retries      │
│                        2. reorder_off_peak()  every off_peak_check_seconds   │
│                        3. process_queue()     promote while running < cap    │
│                                                                               │
│   process_queue():                                                            │
│      queue.dequeue() ─► running[id] ─► asyncio task ─► engine.execute()      │
│                                               │                               │
│                        success ◄──────────────┴──────────► failure            │
│                        counters++                          counters++         │
│                        last_execution                      retry.plan()       │
│                                                             └► timers.arm_retry│
│                        finally: running.pop(id)                               │
│                                                                               │
│   Public API:                                                                 │
│   ├── create_schedule / update_schedule / delete_schedule                    │
│   ├── get_schedule / list_schedules                                          │
│   ├── execute_schedule_now / cancel_execution                                │
│   ├── notify_event / notify_metric / fire_trigger                            │
│   ├── get_execution / get_execution_history / get_queue_stats                │
│   └── start / stop / health / get_stats                                      │
└──────────────────────────────────────────────────────────────────────────────┘

Concurrency:
    All bookkeeping happens under one re-entrant lock that is never held
    across an ``await``. Report executions are fire-and-continue tasks, so
    a slow report never stalls the tick. The capacity check and the
    insertion into the running set happen in the same critical section.

Overlap:
    By default a timer or trigger fire is skipped while the same schedule
    already has an execution pending or running
    (``allow_overlapping_executions=False``). Manual runs and retries are
    never skipped.
"""

from __future__ import annotations

import asyncio
import dataclasses
import threading
import time
import traceback
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from report_scheduler.enums import (
    ExecutionStatus,
    ExecutionTrigger,
    ResourcePriority,
    ScheduleType,
)
from report_scheduler.errors import ExecutionError, NotFoundError, ValidationError
from report_scheduler.logging import LogContext, get_logger
from report_scheduler.models import (
    ExecutionErrorInfo,
    QueueStats,
    ReportResult,
    ReportSchedule,
    ResourceUsage,
    ScheduleCreate,
    ScheduleExecution,
    ScheduleUpdate,
    new_id,
    utc_now,
)
from report_scheduler.settings import SchedulerSettings, get_settings

from .off_peak import OffPeakReorderer, OffPeakWindow
from .protocol import (
    BackendHealth,
    CronEvaluator,
    ReportEngine,
    SchedulePersistence,
    SchedulerBackend,
    TriggerRegistry,
)
from .queue import ExecutionQueue
from .retry import RetryController
from .store import ScheduleStore
from .timers import TimerEntry, TimerHeap, TimerKind
from .triggers import ThresholdGate, match_event
from .validation import ScheduleDefinition, validate_definition

logger = get_logger(__name__)


@dataclass
class SchedulerStats:
    """Statistics for the scheduling service."""

    tick_count: int = 0
    timer_fires: int = 0
    trigger_fires: int = 0
    fires_skipped: int = 0
    executions_started: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    retries_scheduled: int = 0
    retries_exhausted: int = 0
    total_execution_time: float = 0.0
    last_tick: datetime | None = None
    last_error: str | None = None


@dataclass
class SchedulerHealth:
    """Health status for the scheduling service."""

    healthy: bool
    backend: BackendHealth | dict
    schedules_active: int = 0
    timers_armed: int = 0
    pending_retries: int = 0
    queue: QueueStats = field(default_factory=QueueStats)
    last_tick: datetime | None = None
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "backend": self.backend.to_dict() if isinstance(self.backend, BackendHealth) else self.backend,
            "schedules_active": self.schedules_active,
            "timers_armed": self.timers_armed,
            "pending_retries": self.pending_retries,
            "queue": self.queue.to_dict(),
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "stats": {
                "tick_count": self.stats.tick_count,
                "timer_fires": self.stats.timer_fires,
                "fires_skipped": self.stats.fires_skipped,
                "completed": self.stats.completed,
                "failed": self.stats.failed,
                "cancelled": self.stats.cancelled,
                "retries_scheduled": self.stats.retries_scheduled,
                "retries_exhausted": self.stats.retries_exhausted,
            },
        }


class SchedulingService:
    """Report scheduling and execution-queue engine.

    Example:
        >>> service = SchedulingService(engine=my_engine)
        >>> schedule = service.create_schedule(ScheduleCreate(
        ...     report_id="sales-weekly",
        ...     tenant_id="acme",
        ...     schedule_type="cron",
        ...     schedule_config=ScheduleConfig(cron="0 8 * * MON", timezone="Europe/Berlin"),
        ... ))
        >>> service.start()          # inside a running event loop
        >>> ...
        >>> service.stop()
    """

    def __init__(
        self,
        engine: ReportEngine,
        *,
        backend: SchedulerBackend | None = None,
        settings: SchedulerSettings | None = None,
        store: ScheduleStore | None = None,
        cron: CronEvaluator | None = None,
        trigger_registry: TriggerRegistry | None = None,
        persistence: SchedulePersistence | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the scheduling service.

        Args:
            engine: Report execution collaborator
            backend: Timing backend (default: AsyncioSchedulerBackend)
            settings: Tuning knobs (default: from environment)
            store: Schedule store (default: in-memory, croniter-backed)
            cron: Cron evaluator used when ``store`` is not given
            trigger_registry: External event bus / metric monitor
            persistence: Durable storage hooks
            clock: Returns the current aware UTC time
        """
        if backend is None:
            from .asyncio_backend import AsyncioSchedulerBackend

            backend = AsyncioSchedulerBackend()

        self.engine = engine
        self.backend = backend
        self.settings = settings or get_settings()
        self.store = store or ScheduleStore(cron)
        self.trigger_registry = trigger_registry
        self.persistence = persistence
        self.clock = clock

        self.queue = ExecutionQueue()
        self.timers = TimerHeap()
        self.retry = RetryController()
        self.off_peak = OffPeakReorderer(
            OffPeakWindow(
                start_hour=self.settings.off_peak_start_hour,
                end_hour=self.settings.off_peak_end_hour,
                timezone=self.settings.off_peak_timezone,
            ),
            self._is_off_peak_eligible,
        )
        self.threshold_gate = ThresholdGate()

        self._lock = threading.RLock()
        self._running_executions: dict[str, ScheduleExecution] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._live: dict[str, ScheduleExecution] = {}
        self._history: dict[str, deque[ScheduleExecution]] = {}
        self._last_off_peak_check: datetime | None = None
        self._stats = SchedulerStats()
        self._running = False

    @property
    def max_concurrent_executions(self) -> int:
        return self.settings.max_concurrent_executions

    # === Lifecycle ===

    def start(self) -> None:
        """Arm every active timer-based schedule and start the backend tick loop.

        A schedule whose stored ``next_execution`` has already passed is
        moved to its next fire time after now; missed fires are not replayed.
        """
        if self._running:
            logger.warning("scheduling_service_already_running")
            return

        logger.info(
            "scheduling_service_starting",
            backend=self.backend.name,
            interval_seconds=self.settings.tick_interval_seconds,
            max_concurrent_executions=self.max_concurrent_executions,
        )
        with self._lock:
            rearmed = self._rearm_timers(self.clock())
        if rearmed:
            logger.info("timers_rearmed", count=rearmed)
        self.backend.start(self.tick, self.settings.tick_interval_seconds)
        self._running = True

    def stop(self, cancel_running: bool = True) -> None:
        """Stop ticking and clear every recurring timer.

        Pending retries stay armed and fire once the service is started again.

        Args:
            cancel_running: Also cancel in-flight report tasks; they end
                in ``cancelled`` and do not touch schedule counters.
        """
        if self._running:
            logger.info("scheduling_service_stopping")
            self.backend.stop()
            self._running = False

        with self._lock:
            self.timers.clear_recurring()
            tasks = list(self._tasks.values())

        if cancel_running:
            for task in tasks:
                loop = task.get_loop()
                if not loop.is_closed():
                    loop.call_soon_threadsafe(task.cancel)
        logger.info("scheduling_service_stopped", cancelled_tasks=len(tasks) if cancel_running else 0)

    @property
    def is_running(self) -> bool:
        return self._running

    # === Schedule CRUD ===

    def create_schedule(self, definition: ScheduleCreate) -> ReportSchedule:
        """Validate, store and arm a new schedule.

        Raises:
            ValidationError: listing every violated rule
        """
        logger.info(
            "schedule_creating",
            report_id=definition.report_id,
            tenant_id=definition.tenant_id,
            schedule_type=getattr(definition.schedule_type, "value", definition.schedule_type),
        )
        self._validate(
            ScheduleDefinition(
                report_id=definition.report_id,
                tenant_id=definition.tenant_id,
                schedule_type=definition.schedule_type,
                schedule_config=definition.schedule_config,
                event_triggers=definition.event_triggers,
                threshold_triggers=definition.threshold_triggers,
                output_config=definition.output_config,
                resource_priority=definition.resource_priority,
            )
        )

        schedule = ReportSchedule(
            id=new_id(),
            report_id=definition.report_id,
            tenant_id=definition.tenant_id,
            name=definition.name,
            description=definition.description,
            schedule_type=ScheduleType(definition.schedule_type),
            schedule_config=definition.schedule_config,
            event_triggers=list(definition.event_triggers),
            threshold_triggers=list(definition.threshold_triggers),
            output_config=definition.output_config,
            resource_priority=ResourcePriority(definition.resource_priority),
            is_active=definition.is_active,
            created_by=definition.created_by,
            metadata=dict(definition.metadata),
        )

        with self._lock:
            now = self.clock()
            schedule.next_execution = self.store.compute_next_execution(schedule, now)
            if self.persistence is not None:
                self.persistence.save_schedule(schedule)
            self.store.add(schedule)
            if schedule.is_timer_based:
                self._arm_timer(schedule, now)

        self._register_triggers(schedule)

        logger.info(
            "schedule_created",
            schedule_id=schedule.id,
            next_execution=schedule.next_execution.isoformat() if schedule.next_execution else None,
        )
        return schedule

    def update_schedule(self, schedule_id: str, updates: ScheduleUpdate) -> ReportSchedule:
        """Merge ``updates`` into a schedule, then re-arm its timer.

        Raises:
            NotFoundError: unknown schedule
            ValidationError: the merged definition is invalid (nothing changes)
        """
        with self._lock:
            existing = self.store.get(schedule_id)
            if existing is None:
                raise NotFoundError("schedule", schedule_id)

            changes = {
                f.name: getattr(updates, f.name)
                for f in dataclasses.fields(updates)
                if getattr(updates, f.name) is not None
            }
            logger.info("schedule_updating", schedule_id=schedule_id, updates=sorted(changes))

            self._validate(
                ScheduleDefinition(
                    report_id=existing.report_id,
                    tenant_id=existing.tenant_id,
                    schedule_type=changes.get("schedule_type", existing.schedule_type),
                    schedule_config=changes.get("schedule_config", existing.schedule_config),
                    event_triggers=changes.get("event_triggers", existing.event_triggers),
                    threshold_triggers=changes.get("threshold_triggers", existing.threshold_triggers),
                    output_config=changes.get("output_config", existing.output_config),
                    resource_priority=changes.get("resource_priority", existing.resource_priority),
                )
            )
            if "schedule_type" in changes:
                changes["schedule_type"] = ScheduleType(changes["schedule_type"])
            if "resource_priority" in changes:
                changes["resource_priority"] = ResourcePriority(changes["resource_priority"])

            updated = dataclasses.replace(existing, **changes)
            now = self.clock()
            updated.next_execution = self.store.compute_next_execution(updated, now)

            if self.persistence is not None:
                self.persistence.save_schedule(updated)
            self.timers.clear(schedule_id)
            self.store.replace(updated)
            if updated.is_active and updated.is_timer_based:
                self._arm_timer(updated, now)

        self._unregister_triggers(schedule_id)
        self._register_triggers(updated)

        logger.info(
            "schedule_updated",
            schedule_id=schedule_id,
            next_execution=updated.next_execution.isoformat() if updated.next_execution else None,
        )
        return updated

    def delete_schedule(self, schedule_id: str) -> None:
        """Remove a schedule, its timers, its queued executions and its running execution.

        Raises:
            NotFoundError: unknown schedule
        """
        with self._lock:
            if schedule_id not in self.store:
                raise NotFoundError("schedule", schedule_id)

            logger.info("schedule_deleting", schedule_id=schedule_id)
            if self.persistence is not None:
                self.persistence.delete_schedule(schedule_id)

            timers_cleared = self.timers.clear_all_for(schedule_id)
            purged = self.queue.remove_for_schedule(schedule_id)
            for execution in purged:
                self._mark_cancelled(execution)

            running = [e for e in self._running_executions.values() if e.schedule_id == schedule_id]
            for execution in running:
                self._mark_cancelled(execution)

            self.store.remove(schedule_id)
            self._history.pop(schedule_id, None)
            self.threshold_gate.forget(schedule_id)

        self._unregister_triggers(schedule_id)

        logger.info(
            "schedule_deleted",
            schedule_id=schedule_id,
            timers_cleared=timers_cleared,
            pending_cancelled=len(purged),
            running_cancelled=len(running),
        )

    def get_schedule(self, schedule_id: str) -> ReportSchedule | None:
        with self._lock:
            return self.store.get(schedule_id)

    def list_schedules(
        self,
        *,
        report_id: str | None = None,
        tenant_id: str | None = None,
        is_active: bool | None = None,
        schedule_type: ScheduleType | str | None = None,
    ) -> list[ReportSchedule]:
        """List schedules, filtered like the management API expects."""
        with self._lock:
            return self.store.list(
                report_id=report_id,
                tenant_id=tenant_id,
                is_active=is_active,
                schedule_type=schedule_type,
            )

    # === Manual operations ===

    def execute_schedule_now(
        self,
        schedule_id: str,
        priority: ResourcePriority | str = ResourcePriority.NORMAL,
    ) -> str:
        """Queue an immediate execution, active or not. Never arms a timer.

        Returns:
            The execution ID

        Raises:
            NotFoundError: unknown schedule
            ValidationError: ``priority`` is not a resource priority
        """
        try:
            resolved = ResourcePriority(priority)
        except ValueError:
            errors = [f"Unknown resource priority: {priority}"]
            logger.warning("schedule_validation_failed", schedule_id=schedule_id, errors=errors)
            raise ValidationError(errors) from None

        with self._lock:
            schedule = self.store.get(schedule_id)
            if schedule is None:
                raise NotFoundError("schedule", schedule_id)

            logger.info(
                "schedule_executing_now",
                schedule_id=schedule_id,
                priority=resolved.value,
            )
            execution = ScheduleExecution.for_schedule(
                schedule,
                resolved,
                trigger=ExecutionTrigger.MANUAL,
                created_at=self.clock(),
            )
            self._enqueue(execution)
            return execution.id

    def cancel_execution(self, execution_id: str) -> ScheduleExecution:
        """Cancel a pending or running execution.

        A running report task is left to finish in the background; its
        result is discarded.

        Raises:
            NotFoundError: no pending or running execution with that ID
        """
        with self._lock:
            execution = self.queue.remove(execution_id) or self._running_executions.get(execution_id)
            if execution is None:
                raise NotFoundError("execution", execution_id)
            self._mark_cancelled(execution)
            return execution

    # === Event / threshold triggers ===

    def notify_event(
        self,
        module: str,
        event: str,
        payload: dict[str, Any] | None = None,
    ) -> list[str]:
        """Fire every event-driven schedule whose trigger matches.

        Returns:
            IDs of the executions queued
        """
        with self._lock:
            matched = match_event(self.store.list(), module, event, payload)
            queued = [self._fire_trigger(s, ExecutionTrigger.EVENT) for s in matched]
        return [e.id for e in queued if e is not None]

    def notify_metric(self, metric: str, value: float) -> list[str]:
        """Fire every threshold schedule whose trigger holds for ``value``.

        Returns:
            IDs of the executions queued
        """
        with self._lock:
            matched = self.threshold_gate.match(self.store.list(), metric, value, self.clock())
            queued = [self._fire_trigger(s, ExecutionTrigger.THRESHOLD) for s in matched]
        return [e.id for e in queued if e is not None]

    def fire_trigger(self, schedule_id: str, source: str = "event") -> str | None:
        """Callback for an external trigger registry.

        Returns:
            The queued execution ID, or None when the fire was skipped
        """
        trigger = ExecutionTrigger.THRESHOLD if source == "threshold" else ExecutionTrigger.EVENT
        with self._lock:
            schedule = self.store.get(schedule_id)
            if schedule is None:
                logger.warning("trigger_for_unknown_schedule", schedule_id=schedule_id, source=source)
                return None
            if not schedule.is_active:
                return None
            execution = self._fire_trigger(schedule, trigger)
        return execution.id if execution else None

    # === Tick processing ===

    async def tick(self) -> None:
        """Single driver tick. Called by the backend at each interval.

        Each phase is isolated: a failure is logged and the remaining
        phases still run.
        """
        now = self.clock()
        self._stats.tick_count += 1
        self._stats.last_tick = now

        try:
            self.fire_due_timers(now)
        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception("timer_phase_failed")

        try:
            if (
                self._last_off_peak_check is None
                or now - self._last_off_peak_check
                >= timedelta(seconds=self.settings.off_peak_check_seconds)
            ):
                self.reorder_off_peak(now)
        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception("off_peak_phase_failed")

        try:
            await self.process_queue()
        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception("queue_phase_failed")

    def fire_due_timers(self, now: datetime | None = None) -> int:
        """Fire every due timer entry. Fire errors are logged, never raised.

        Returns:
            Number of entries popped
        """
        now = now or self.clock()
        with self._lock:
            due = self.timers.pop_due(now)

        for entry in due:
            try:
                if entry.kind is TimerKind.RECURRING:
                    self._fire_schedule(entry, now)
                else:
                    self._fire_retry(entry)
            except Exception as e:
                self._stats.last_error = str(e)
                logger.exception(
                    "timer_fire_failed",
                    schedule_id=entry.schedule_id,
                    kind=entry.kind.value,
                )
        return len(due)

    def reorder_off_peak(self, now: datetime | None = None) -> bool:
        """Apply the off-peak ordering for the window state at ``now``."""
        now = now or self.clock()
        with self._lock:
            self._last_off_peak_check = now
            return self.off_peak.apply(self.queue, now)

    async def process_queue(self) -> list[ScheduleExecution]:
        """Promote queued executions while capacity allows.

        Must be awaited on the loop that should own the report tasks.

        Returns:
            The executions started by this call
        """
        started: list[ScheduleExecution] = []
        while True:
            with self._lock:
                if len(self._running_executions) >= self.max_concurrent_executions:
                    break
                execution = self.queue.dequeue()
                if execution is None:
                    break
                execution.status = ExecutionStatus.RUNNING
                execution.started_at = self.clock()
                self._running_executions[execution.id] = execution
                self._stats.executions_started += 1
                task = asyncio.create_task(
                    self._run_execution(execution),
                    name=f"report-execution-{execution.id}",
                )
                self._tasks[execution.id] = task
            task.add_done_callback(lambda _t, eid=execution.id: self._forget_task(eid))
            started.append(execution)
        return started

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until every report task started on this loop has finished."""
        with self._lock:
            tasks = [t for t in self._tasks.values() if t.get_loop() is asyncio.get_running_loop()]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    # === Execution handling ===

    async def _run_execution(self, execution: ScheduleExecution) -> None:
        """Run one execution to a terminal state. Never raises except on cancellation."""
        async with LogContext(schedule_id=execution.schedule_id, execution_id=execution.id):
            logger.info(
                "execution_started",
                report_id=execution.report_id,
                tenant_id=execution.tenant_id,
                retry_attempt=execution.retry_attempt,
            )
            cpu_start = time.process_time()
            try:
                try:
                    result = await self.engine.execute(
                        execution.report_id,
                        execution.tenant_id,
                        self._build_parameters(execution),
                    )
                except asyncio.CancelledError:
                    with self._lock:
                        self._mark_cancelled(execution)
                    raise
                except Exception as exc:
                    self._complete_failure(execution, exc, cpu_start)
                else:
                    self._complete_success(execution, result, cpu_start)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("execution_bookkeeping_failed")
            finally:
                with self._lock:
                    self._running_executions.pop(execution.id, None)

    def _build_parameters(self, execution: ScheduleExecution) -> dict[str, Any]:
        with self._lock:
            schedule = self.store.get(execution.schedule_id)
            params: dict[str, Any] = {
                "schedule_id": execution.schedule_id,
                "execution_id": execution.id,
                "retry_attempt": execution.retry_attempt,
                "trigger": execution.trigger.value,
            }
            if schedule is not None:
                params["output_config"] = schedule.output_config.to_dict()
                params["timezone"] = schedule.schedule_config.timezone or "UTC"
                params["metadata"] = dict(schedule.metadata)
            return params

    def _complete_success(
        self,
        execution: ScheduleExecution,
        result: ReportResult | None,
        cpu_start: float,
    ) -> None:
        with self._lock:
            if execution.status is ExecutionStatus.CANCELLED:
                logger.info("execution_result_discarded", outcome="completed")
                return

            now = self.clock()
            execution.status = ExecutionStatus.COMPLETED
            self._stamp_completion(execution, now)
            if result is not None:
                execution.record_count = result.record_count
                execution.output_files = list(result.output_files)
            execution.resource_usage = (
                result.resource_usage
                if result is not None and result.resource_usage is not None
                else ResourceUsage(cpu_time=time.process_time() - cpu_start)
            )

            schedule = self.store.get(execution.schedule_id)
            if schedule is not None:
                schedule.execution_count += 1
                schedule.success_count += 1
                schedule.last_execution = now
                self._after_count_update(schedule)

            self._stats.completed += 1
            self._stats.total_execution_time += execution.execution_time or 0.0
            self._finish(execution)

        logger.info(
            "execution_completed",
            execution_time=execution.execution_time,
            record_count=execution.record_count,
        )

    def _complete_failure(
        self,
        execution: ScheduleExecution,
        exc: Exception,
        cpu_start: float,
    ) -> None:
        error = ExecutionError.from_exception(exc).with_context(
            schedule_id=execution.schedule_id,
            execution_id=execution.id,
            retry_attempt=execution.retry_attempt,
        )
        with self._lock:
            if execution.status is ExecutionStatus.CANCELLED:
                logger.info("execution_result_discarded", outcome="failed")
                return

            now = self.clock()
            execution.status = ExecutionStatus.FAILED
            self._stamp_completion(execution, now)
            execution.resource_usage = ResourceUsage(cpu_time=time.process_time() - cpu_start)
            execution.error = ExecutionErrorInfo(
                message=error.message,
                stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                code=error.code,
            )

            schedule = self.store.get(execution.schedule_id)
            retry_config = None
            if schedule is not None:
                schedule.execution_count += 1
                schedule.error_count += 1
                retry_config = schedule.schedule_config.retry_config
                self._after_count_update(schedule)

            self._stats.failed += 1
            self._stats.total_execution_time += execution.execution_time or 0.0

            plan = self.retry.plan(execution, retry_config, now)
            if plan.execution is not None:
                self.timers.arm_retry(plan.execution, plan.fire_at)
                self._stats.retries_scheduled += 1
            elif plan.exhausted is not None:
                execution.retries_exhausted = True
                self._stats.retries_exhausted += 1
            self._finish(execution)

        logger.error("execution_failed", **error.to_dict())
        if plan.execution is not None:
            logger.info(
                "execution_retry_scheduled",
                retry_execution_id=plan.execution.id,
                retry_attempt=plan.execution.retry_attempt,
                delay_seconds=plan.delay.total_seconds(),
            )
        elif plan.exhausted is not None:
            logger.warning("max_retries_exceeded", **plan.exhausted.to_dict())

    def _stamp_completion(self, execution: ScheduleExecution, now: datetime) -> None:
        execution.completed_at = now
        if execution.started_at is not None:
            execution.execution_time = (now - execution.started_at).total_seconds() * 1000

    def _after_count_update(self, schedule: ReportSchedule) -> None:
        """Persist counters; stop the clock once max_executions is reached."""
        if schedule.executions_exhausted and self.timers.clear(schedule.id):
            schedule.next_execution = None
            logger.info(
                "schedule_max_executions_reached",
                schedule_id=schedule.id,
                max_executions=schedule.schedule_config.max_executions,
            )
        self._save_schedule_quietly(schedule)

    def _mark_cancelled(self, execution: ScheduleExecution) -> None:
        """Move a pending/running execution to cancelled. Caller holds the lock."""
        if execution.status.is_terminal:
            return
        execution.status = ExecutionStatus.CANCELLED
        execution.completed_at = self.clock()
        self._running_executions.pop(execution.id, None)
        self._stats.cancelled += 1
        self._finish(execution)
        logger.info(
            "execution_cancelled",
            execution_id=execution.id,
            schedule_id=execution.schedule_id,
        )

    def _finish(self, execution: ScheduleExecution) -> None:
        """Move a terminal execution from the live index into history."""
        self._live.pop(execution.id, None)
        if execution.schedule_id in self.store:
            history = self._history.setdefault(
                execution.schedule_id, deque(maxlen=self.settings.history_limit)
            )
            history.append(execution)
        self._save_execution_quietly(execution)

    def _forget_task(self, execution_id: str) -> None:
        with self._lock:
            self._tasks.pop(execution_id, None)

    # === Timer helpers ===

    def _arm_timer(self, schedule: ReportSchedule, now: datetime) -> None:
        if schedule.next_execution is None:
            return
        entry = self.timers.arm(schedule.id, schedule.next_execution, now)
        if entry is None:
            logger.warning(
                "timer_not_armed_stale",
                schedule_id=schedule.id,
                next_execution=schedule.next_execution.isoformat(),
            )

    def _rearm_timers(self, now: datetime) -> int:
        rearmed = 0
        for schedule in self.store.list(is_active=True):
            if not schedule.is_timer_based or self.timers.has_timer(schedule.id):
                continue
            if schedule.next_execution is None or schedule.next_execution <= now:
                schedule.next_execution = self.store.compute_next_execution(schedule, now)
                self._save_schedule_quietly(schedule)
            if schedule.next_execution is not None and self.timers.arm(
                schedule.id, schedule.next_execution, now
            ):
                rearmed += 1
        return rearmed

    def _fire_schedule(self, entry: TimerEntry, now: datetime) -> None:
        with self._lock:
            schedule = self.store.get(entry.schedule_id)
            if schedule is None:
                logger.warning("timer_fired_for_unknown_schedule", schedule_id=entry.schedule_id)
                return
            if not schedule.is_active:
                return

            self._stats.timer_fires += 1
            self._enqueue_fire(schedule, ExecutionTrigger.TIMER)

            schedule.next_execution = self.store.compute_next_execution(schedule, now)
            self._save_schedule_quietly(schedule)
            self._arm_timer(schedule, now)

    def _fire_retry(self, entry: TimerEntry) -> None:
        with self._lock:
            execution = entry.execution
            if execution is None:
                return
            if execution.schedule_id not in self.store:
                logger.info(
                    "retry_dropped_schedule_deleted",
                    schedule_id=execution.schedule_id,
                    execution_id=execution.id,
                )
                return
            self._enqueue(execution)

    def _fire_trigger(
        self, schedule: ReportSchedule, trigger: ExecutionTrigger
    ) -> ScheduleExecution | None:
        self._stats.trigger_fires += 1
        return self._enqueue_fire(schedule, trigger)

    def _enqueue_fire(
        self, schedule: ReportSchedule, trigger: ExecutionTrigger
    ) -> ScheduleExecution | None:
        """Queue an execution for a clock/trigger fire unless the schedule is in flight."""
        if not self.settings.allow_overlapping_executions and self._in_flight(schedule.id):
            self._stats.fires_skipped += 1
            logger.info(
                "schedule_fire_skipped_in_flight",
                schedule_id=schedule.id,
                trigger=trigger.value,
            )
            return None

        execution = ScheduleExecution.for_schedule(
            schedule,
            schedule.resource_priority,
            trigger=trigger,
            created_at=self.clock(),
        )
        self._enqueue(execution)
        return execution

    def _enqueue(self, execution: ScheduleExecution) -> None:
        with self._lock:
            position = self.queue.enqueue(execution)
            self._live[execution.id] = execution
            self._save_execution_quietly(execution)
            logger.info(
                "execution_queued",
                execution_id=execution.id,
                schedule_id=execution.schedule_id,
                priority=execution.priority,
                trigger=execution.trigger.value,
                queue_position=position,
                queue_size=len(self.queue),
            )

    def _in_flight(self, schedule_id: str) -> bool:
        return self.queue.has_schedule(schedule_id) or any(
            e.schedule_id == schedule_id for e in self._running_executions.values()
        )

    def _is_off_peak_eligible(self, execution: ScheduleExecution) -> bool:
        schedule = self.store.get(execution.schedule_id)
        return bool(schedule and schedule.schedule_config.off_peak_only)

    # === Collaborators ===

    def _validate(self, definition: ScheduleDefinition) -> None:
        try:
            validate_definition(definition, self.store.cron.is_valid)
        except ValidationError as e:
            logger.warning("schedule_validation_failed", errors=e.errors)
            raise

    def _register_triggers(self, schedule: ReportSchedule) -> None:
        if schedule.schedule_type == ScheduleType.EVENT_DRIVEN:
            logger.info(
                "event_triggers_registering",
                schedule_id=schedule.id,
                triggers=len(schedule.event_triggers),
            )
        elif schedule.schedule_type == ScheduleType.THRESHOLD:
            logger.info(
                "threshold_monitoring_registering",
                schedule_id=schedule.id,
                triggers=len(schedule.threshold_triggers),
            )
        else:
            return
        if self.trigger_registry is not None:
            self.trigger_registry.register(schedule, self.fire_trigger)

    def _unregister_triggers(self, schedule_id: str) -> None:
        if self.trigger_registry is not None:
            self.trigger_registry.unregister(schedule_id)

    def _save_schedule_quietly(self, schedule: ReportSchedule) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.save_schedule(schedule)
        except Exception:
            logger.exception("schedule_persist_failed", schedule_id=schedule.id)

    def _save_execution_quietly(self, execution: ScheduleExecution) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.save_execution(execution)
        except Exception:
            logger.exception("execution_persist_failed", execution_id=execution.id)

    # === Introspection ===

    def get_execution(self, execution_id: str) -> ScheduleExecution | None:
        """Find a live or historical execution by ID."""
        with self._lock:
            execution = self._live.get(execution_id)
            if execution is not None:
                return execution
            for history in self._history.values():
                for past in history:
                    if past.id == execution_id:
                        return past
            for waiting in self.timers.retry_executions():
                if waiting.id == execution_id:
                    return waiting
            return None

    def get_execution_history(self, schedule_id: str, limit: int = 50) -> list[ScheduleExecution]:
        """Finished executions of a schedule, most recent first."""
        with self._lock:
            history = self._history.get(schedule_id)
            if not history:
                return []
            return list(reversed(history))[:limit]

    def pending_executions(self) -> list[ScheduleExecution]:
        """Queue snapshot, head first."""
        with self._lock:
            return self.queue.snapshot()

    def running_executions(self) -> list[ScheduleExecution]:
        with self._lock:
            return list(self._running_executions.values())

    def get_queue_stats(self) -> QueueStats:
        with self._lock:
            finished = self._stats.completed + self._stats.failed
            return QueueStats(
                pending=len(self.queue),
                running=len(self._running_executions),
                completed=self._stats.completed,
                failed=self._stats.failed,
                cancelled=self._stats.cancelled,
                total_execution_time=self._stats.total_execution_time,
                average_execution_time=(
                    self._stats.total_execution_time / finished if finished else 0.0
                ),
                peak_queue_size=self.queue.peak_size,
                current_queue_size=len(self.queue),
            )

    def health(self) -> SchedulerHealth:
        backend_health = self.backend.health()
        with self._lock:
            return SchedulerHealth(
                healthy=self._running and backend_health.get("healthy", False),
                backend=backend_health,
                schedules_active=self.store.count_active(),
                timers_armed=sum(1 for s in self.store.list() if self.timers.has_timer(s.id)),
                pending_retries=self.timers.pending_retries(),
                queue=self.get_queue_stats(),
                last_tick=self._stats.last_tick,
                stats=self._stats,
            )

    def get_stats(self) -> SchedulerStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = SchedulerStats()
