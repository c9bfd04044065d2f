"""Tests for SchedulingService: queue processing, retries, cancellation."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from report_scheduler.enums import ExecutionStatus, ExecutionTrigger
from report_scheduler.errors import NotFoundError
from report_scheduler.models import (
    EventTrigger,
    RetryConfig,
    ScheduleConfig,
    ScheduleCreate,
    ThresholdTrigger,
)
from tests._support.fakes import (
    RecordingPersistence,
    cron_schedule,
    interval_schedule,
    run_queue,
)


def assert_counters_consistent(schedule):
    assert schedule.success_count + schedule.error_count <= schedule.execution_count


class TestQueueProcessing:
    """Promotion from the queue under the concurrency cap."""

    @pytest.mark.asyncio
    async def test_successful_execution(self, service, engine, clock):
        """Completed executions carry engine results and update counters."""
        schedule = service.create_schedule(cron_schedule())
        eid = service.execute_schedule_now(schedule.id)

        started = await run_queue(service)

        execution = service.get_execution(eid)
        assert started == [execution]
        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.started_at == clock.now
        assert execution.completed_at == clock.now
        assert execution.execution_time == 0.0
        assert execution.record_count == 42
        assert execution.output_files[0].format == "pdf"
        assert schedule.execution_count == 1
        assert schedule.success_count == 1
        assert schedule.error_count == 0
        assert schedule.last_execution == clock.now
        assert service.running_executions() == []

        report_id, tenant_id, params = engine.calls[0]
        assert (report_id, tenant_id) == ("sales-weekly", "acme")
        assert params["execution_id"] == eid
        assert params["schedule_id"] == schedule.id
        assert params["output_config"]["formats"] == ["pdf"]
        assert params["trigger"] == "manual"

    @pytest.mark.asyncio
    async def test_failed_execution_records_error(self, service, engine):
        """Engine exceptions become execution errors with their code."""
        schedule = service.create_schedule(cron_schedule())
        engine.fail("sales-weekly")
        eid = service.execute_schedule_now(schedule.id)

        await run_queue(service)

        execution = service.get_execution(eid)
        assert execution.status is ExecutionStatus.FAILED
        assert execution.error.code == "ENGINE_DOWN"
        assert execution.error.message == "report sales-weekly failed"
        assert "EngineFailure" in execution.error.stack
        assert schedule.execution_count == 1
        assert schedule.error_count == 1
        assert schedule.success_count == 0
        assert schedule.last_execution is None
        assert service.timers.pending_retries() == 0

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, make_service, engine):
        """Never more than max_concurrent_executions running."""
        service = make_service(max_concurrent_executions=2)
        gate = engine.block("sales-weekly")
        schedule = service.create_schedule(cron_schedule())
        for _ in range(5):
            service.execute_schedule_now(schedule.id)

        started = await service.process_queue()
        assert len(started) == 2
        assert len(service.running_executions()) == 2
        assert len(service.queue) == 3

        assert await service.process_queue() == []
        await asyncio.sleep(0)
        assert len(service.running_executions()) == 2

        gate.set()
        peak = 0
        while service.queue or service.running_executions():
            await service.process_queue()
            peak = max(peak, len(service.running_executions()))
            await service.wait_idle(timeout=5)

        assert peak <= 2
        assert schedule.execution_count == 5
        assert schedule.success_count == 5

    @pytest.mark.asyncio
    async def test_priority_run_order(self, make_service, engine):
        """normal, critical, normal, high run as critical, high, normal, normal."""
        service = make_service(max_concurrent_executions=1)
        schedule = service.create_schedule(cron_schedule())
        n1 = service.execute_schedule_now(schedule.id, "normal")
        crit = service.execute_schedule_now(schedule.id, "critical")
        n2 = service.execute_schedule_now(schedule.id, "normal")
        high = service.execute_schedule_now(schedule.id, "high")

        for _ in range(4):
            started = await run_queue(service)
            assert len(started) == 1

        assert engine.executed == [crit, high, n1, n2]

    @pytest.mark.asyncio
    async def test_execution_history_most_recent_first(self, service):
        schedule = service.create_schedule(cron_schedule())
        ids = [service.execute_schedule_now(schedule.id) for _ in range(3)]

        await run_queue(service)

        history = service.get_execution_history(schedule.id)
        assert [e.id for e in history] == list(reversed(ids))
        assert [e.id for e in service.get_execution_history(schedule.id, limit=2)] == [ids[2], ids[1]]
        assert service.get_execution_history("missing") == []

    @pytest.mark.asyncio
    async def test_queue_stats(self, service, engine):
        schedule = service.create_schedule(cron_schedule())
        engine.fail("sales-weekly")
        for _ in range(3):
            service.execute_schedule_now(schedule.id)

        stats_before = service.get_queue_stats()
        assert stats_before.pending == 3
        assert stats_before.current_queue_size == 3

        await run_queue(service)

        stats = service.get_queue_stats()
        assert stats.pending == 0
        assert stats.running == 0
        assert stats.completed == 2
        assert stats.failed == 1
        assert stats.peak_queue_size == 3
        assert stats.to_dict()["failed"] == 1


class TestRetries:
    """Failed executions are retried with exponential backoff."""

    @pytest.mark.asyncio
    async def test_retry_chain_until_exhausted(self, service, engine, clock):
        """Initial failure plus 2 retries, then nothing more is queued."""
        schedule = service.create_schedule(
            cron_schedule(
                schedule_config=ScheduleConfig(
                    cron="5 12 * * *",
                    retry_config=RetryConfig(max_retries=2, retry_delay=1, backoff_multiplier=2),
                )
            )
        )
        engine.fail_always("sales-weekly")

        clock.advance(minutes=5)
        assert service.fire_due_timers() == 1
        await run_queue(service)
        assert schedule.error_count == 1
        assert service.timers.pending_retries(schedule.id) == 1

        clock.advance(seconds=59)
        assert service.fire_due_timers() == 0
        clock.advance(seconds=1)
        assert service.fire_due_timers() == 1
        (retry,) = service.pending_executions()
        assert retry.retry_attempt == 1
        assert retry.trigger is ExecutionTrigger.RETRY
        await run_queue(service)

        clock.advance(minutes=1, seconds=59)
        assert service.fire_due_timers() == 0
        clock.advance(seconds=1)
        assert service.fire_due_timers() == 1
        await run_queue(service)

        assert schedule.execution_count == 3
        assert schedule.error_count == 3
        assert schedule.success_count == 0
        assert service.timers.pending_retries(schedule.id) == 0
        assert len(service.queue) == 0
        assert len(engine.calls) == 3

        history = service.get_execution_history(schedule.id)
        assert [e.retry_attempt for e in history] == [2, 1, 0]
        assert history[0].retries_exhausted is True
        assert service.get_stats().retries_exhausted == 1
        assert service.get_stats().retries_scheduled == 2

    @pytest.mark.asyncio
    async def test_retry_succeeds(self, service, engine, clock):
        schedule = service.create_schedule(
            cron_schedule(schedule_config=ScheduleConfig(cron="0 0 1 1 *", retry_config=RetryConfig()))
        )
        engine.fail("sales-weekly", times=1)
        service.execute_schedule_now(schedule.id, "high")
        await run_queue(service)

        clock.advance(minutes=1)
        service.fire_due_timers()
        (retry,) = service.pending_executions()
        assert retry.priority == 3
        await run_queue(service)

        assert schedule.execution_count == 2
        assert schedule.success_count == 1
        assert schedule.error_count == 1
        assert service.get_execution(retry.id).status is ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pending_retry_survives_restart(self, service, engine, clock):
        """A retry armed before stop still fires after the next start."""
        schedule = service.create_schedule(
            cron_schedule(schedule_config=ScheduleConfig(cron="0 0 1 1 *", retry_config=RetryConfig()))
        )
        engine.fail("sales-weekly", times=1)
        service.start()
        service.execute_schedule_now(schedule.id)
        await run_queue(service)
        assert service.timers.pending_retries(schedule.id) == 1

        service.stop()
        assert service.timers.pending_retries(schedule.id) == 1
        assert not service.timers.has_timer(schedule.id)
        service.start()
        assert service.timers.has_timer(schedule.id)

        clock.advance(minutes=1)
        assert service.fire_due_timers() == 1
        (retry,) = service.pending_executions()
        assert retry.retry_attempt == 1
        await run_queue(service)
        service.stop()

        assert schedule.success_count == 1
        assert schedule.error_count == 1
        assert service.timers.pending_retries(schedule.id) == 0

    @pytest.mark.asyncio
    async def test_retry_waiting_is_findable(self, service, engine):
        schedule = service.create_schedule(
            cron_schedule(schedule_config=ScheduleConfig(cron="0 0 1 1 *", retry_config=RetryConfig()))
        )
        engine.fail("sales-weekly")
        service.execute_schedule_now(schedule.id)
        await run_queue(service)

        (waiting,) = service.timers.retry_executions()
        assert service.get_execution(waiting.id) is waiting

    @pytest.mark.asyncio
    async def test_delete_cancels_pending_retries(self, service, engine, clock):
        schedule = service.create_schedule(
            cron_schedule(schedule_config=ScheduleConfig(cron="0 0 1 1 *", retry_config=RetryConfig()))
        )
        engine.fail("sales-weekly")
        service.execute_schedule_now(schedule.id)
        await run_queue(service)
        assert service.timers.pending_retries(schedule.id) == 1

        service.delete_schedule(schedule.id)
        clock.advance(minutes=10)

        assert service.fire_due_timers() == 0
        assert len(service.queue) == 0


class TestCancellation:
    """Cancelling running executions and deleting busy schedules."""

    @pytest.mark.asyncio
    async def test_delete_with_pending_and_running(self, make_service, engine):
        """Pending disappears; running is cancelled and leaves counters alone."""
        service = make_service(max_concurrent_executions=1)
        gate = engine.block("sales-weekly")
        schedule = service.create_schedule(cron_schedule())
        service.execute_schedule_now(schedule.id)
        service.execute_schedule_now(schedule.id)

        await service.process_queue()
        (running,) = service.running_executions()
        (pending,) = service.pending_executions()

        service.delete_schedule(schedule.id)

        assert len(service.queue) == 0
        assert service.running_executions() == []
        assert pending.status is ExecutionStatus.CANCELLED
        assert running.status is ExecutionStatus.CANCELLED

        gate.set()
        await service.wait_idle(timeout=5)

        assert running.status is ExecutionStatus.CANCELLED
        assert running.record_count is None
        assert schedule.execution_count == 0
        assert schedule.success_count == 0
        stats = service.get_queue_stats()
        assert stats.completed == 0
        assert stats.cancelled == 2

    @pytest.mark.asyncio
    async def test_cancel_running_frees_slot(self, make_service, engine):
        service = make_service(max_concurrent_executions=1)
        gate = engine.block("sales-weekly")
        schedule = service.create_schedule(cron_schedule())
        first = service.execute_schedule_now(schedule.id)
        second = service.execute_schedule_now(schedule.id)
        await service.process_queue()

        service.cancel_execution(first)
        started = await service.process_queue()

        assert [e.id for e in started] == [second]
        gate.set()
        await service.wait_idle(timeout=5)
        assert service.get_execution(first).status is ExecutionStatus.CANCELLED
        assert service.get_execution(second).status is ExecutionStatus.COMPLETED
        assert schedule.execution_count == 1

    @pytest.mark.asyncio
    async def test_cancel_unknown_raises(self, service):
        with pytest.raises(NotFoundError):
            service.cancel_execution("missing")

    @pytest.mark.asyncio
    async def test_stop_cancels_running_tasks(self, service, engine):
        gate = engine.block("sales-weekly")
        schedule = service.create_schedule(cron_schedule())
        eid = service.execute_schedule_now(schedule.id)
        await service.process_queue()
        await asyncio.sleep(0)

        service.start()
        service.stop()
        await service.wait_idle(timeout=5)

        assert service.get_execution(eid).status is ExecutionStatus.CANCELLED
        assert service.running_executions() == []
        assert schedule.execution_count == 0
        gate.set()


class TestManualAndTriggers:
    """Manual runs and event / threshold triggers end to end."""

    @pytest.mark.asyncio
    async def test_execute_now_on_inactive_event_schedule(self, service, engine):
        """Runs exactly once and never arms a recurring timer."""
        schedule = service.create_schedule(
            ScheduleCreate(
                report_id="churn",
                tenant_id="acme",
                schedule_type="event_driven",
                event_triggers=[EventTrigger(module="crm", event="account_closed")],
                is_active=False,
            )
        )

        eid = service.execute_schedule_now(schedule.id, "critical")
        await run_queue(service)
        await run_queue(service)

        assert engine.executed == [eid]
        assert schedule.execution_count == 1
        assert not service.timers.has_timer(schedule.id)
        assert len(service.timers) == 0

    @pytest.mark.asyncio
    async def test_notify_event(self, service, engine):
        schedule = service.create_schedule(
            ScheduleCreate(
                report_id="invoices",
                tenant_id="acme",
                schedule_type="event_driven",
                event_triggers=[
                    EventTrigger(module="billing", event="invoice_paid", conditions={"region": "eu"})
                ],
            )
        )

        assert service.notify_event("billing", "invoice_paid", {"region": "us"}) == []
        (eid,) = service.notify_event("billing", "invoice_paid", {"region": "eu"})
        assert service.notify_event("billing", "invoice_paid", {"region": "eu"}) == []

        await run_queue(service)

        execution = service.get_execution(eid)
        assert execution.trigger is ExecutionTrigger.EVENT
        assert execution.status is ExecutionStatus.COMPLETED
        assert schedule.success_count == 1

    @pytest.mark.asyncio
    async def test_notify_metric_debounced(self, service, clock):
        schedule = service.create_schedule(
            ScheduleCreate(
                report_id="capacity",
                tenant_id="acme",
                schedule_type="threshold",
                threshold_triggers=[ThresholdTrigger(metric="disk_used_pct", operator=">=", value=90)],
            )
        )

        assert service.notify_metric("disk_used_pct", 80) == []
        assert len(service.notify_metric("disk_used_pct", 95)) == 1
        await run_queue(service)

        clock.advance(minutes=1)
        assert service.notify_metric("disk_used_pct", 96) == []
        clock.advance(minutes=4)
        assert len(service.notify_metric("disk_used_pct", 97)) == 1
        await run_queue(service)

        assert schedule.execution_count == 2


class TestMaxExecutions:
    """Schedules stop after max_executions."""

    @pytest.mark.asyncio
    async def test_timer_stops_after_cap(self, service, clock):
        schedule = service.create_schedule(
            interval_schedule(schedule_config=ScheduleConfig(interval=5, max_executions=1))
        )

        clock.advance(minutes=5)
        service.fire_due_timers()
        await run_queue(service)

        assert schedule.execution_count == 1
        assert schedule.next_execution is None
        assert not service.timers.has_timer(schedule.id)

        clock.advance(minutes=30)
        assert service.fire_due_timers() == 0


class TestTick:
    """The driver tick runs every phase."""

    @pytest.mark.asyncio
    async def test_tick_fires_and_processes(self, service, engine, clock):
        service.create_schedule(interval_schedule(minutes=5))
        clock.advance(minutes=5)

        await service.tick()
        await service.wait_idle(timeout=5)

        assert len(engine.calls) == 1
        stats = service.get_stats()
        assert stats.tick_count == 1
        assert stats.last_tick == clock.now
        assert stats.timer_fires == 1

    @pytest.mark.asyncio
    async def test_tick_isolates_phase_failures(self, service, engine, monkeypatch):
        schedule = service.create_schedule(cron_schedule())
        service.execute_schedule_now(schedule.id)

        def boom(now=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(service, "fire_due_timers", boom)

        await service.tick()
        await service.wait_idle(timeout=5)

        assert len(engine.calls) == 1
        assert service.get_stats().last_error == "boom"

    @pytest.mark.asyncio
    async def test_tick_off_peak_reorder(self, service, clock):
        """Off-peak-only work moves to the head during the night."""
        clock.set(datetime(2025, 1, 15, 23, 30, tzinfo=UTC))
        daytime = service.create_schedule(cron_schedule("daytime"))
        nightly = service.create_schedule(
            cron_schedule(
                "nightly",
                schedule_config=ScheduleConfig(cron="0 0 1 1 *", off_peak_only=True),
            )
        )
        service.execute_schedule_now(daytime.id, "high")
        service.execute_schedule_now(nightly.id, "low")

        assert service.reorder_off_peak() is True

        head = service.pending_executions()[0]
        assert head.schedule_id == nightly.id
        assert service.off_peak.active

    @pytest.mark.asyncio
    async def test_off_peak_check_interval(self, make_service, clock, monkeypatch):
        service = make_service(off_peak_check_seconds=60)
        calls = []
        original = service.reorder_off_peak

        def spy(now=None):
            calls.append(now)
            return original(now)

        monkeypatch.setattr(service, "reorder_off_peak", spy)

        await service.tick()
        clock.advance(seconds=30)
        await service.tick()
        clock.advance(seconds=30)
        await service.tick()

        assert len(calls) == 2


class TestPersistenceDuringExecution:
    """Execution state changes reach persistence."""

    @pytest.mark.asyncio
    async def test_execution_saved_on_each_transition(self, make_service):
        persistence = RecordingPersistence()
        service = make_service(persistence=persistence)
        schedule = service.create_schedule(cron_schedule())
        eid = service.execute_schedule_now(schedule.id)

        await run_queue(service)

        assert [s for e, s in persistence.saved_executions if e == eid] == ["pending", "completed"]
        assert persistence.saved_schedules.count(schedule.id) == 2

    @pytest.mark.asyncio
    async def test_persistence_errors_do_not_break_execution(self, make_service):
        class Flaky(RecordingPersistence):
            def save_execution(self, execution):
                if execution.status is ExecutionStatus.COMPLETED:
                    raise OSError("db unavailable")
                super().save_execution(execution)

        service = make_service(persistence=Flaky())
        schedule = service.create_schedule(cron_schedule())
        eid = service.execute_schedule_now(schedule.id)

        await run_queue(service)

        assert service.get_execution(eid).status is ExecutionStatus.COMPLETED
        assert schedule.success_count == 1
        assert service.running_executions() == []


class TestCounterInvariant:
    """success + error never exceeds execution_count."""

    @pytest.mark.asyncio
    async def test_mixed_outcomes(self, make_service, engine, clock):
        service = make_service(max_concurrent_executions=3)
        schedule = service.create_schedule(
            cron_schedule(schedule_config=ScheduleConfig(cron="0 0 1 1 *", retry_config=RetryConfig(max_retries=1)))
        )
        engine.fail("sales-weekly", times=3)
        seen = []
        for _ in range(6):
            service.execute_schedule_now(schedule.id)

        for _ in range(6):
            await service.process_queue()
            assert_counters_consistent(schedule)
            seen.append(schedule.execution_count)
            await service.wait_idle(timeout=5)
            clock.advance(minutes=1)
            service.fire_due_timers()
            assert_counters_consistent(schedule)

        assert seen == sorted(seen)
        assert schedule.execution_count == schedule.success_count + schedule.error_count
        assert schedule.error_count == 3
