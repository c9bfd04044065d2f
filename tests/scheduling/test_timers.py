"""Tests for TimerHeap."""

from datetime import timedelta

from report_scheduler.scheduling.timers import TimerHeap, TimerKind
from tests._support.fakes import START, make_execution


class TestTimerHeapArm:
    """Arming recurring timers."""

    def test_arm_future_fire(self):
        """A future fire time is armed and pops when due."""
        timers = TimerHeap()
        entry = timers.arm("s-1", START + timedelta(minutes=5), START)

        assert entry is not None
        assert timers.has_timer("s-1")
        assert timers.pop_due(START + timedelta(minutes=4)) == []
        assert timers.pop_due(START + timedelta(minutes=5)) == [entry]
        assert not timers.has_timer("s-1")

    def test_arm_past_or_now_is_refused(self):
        """delay <= 0 does not arm."""
        timers = TimerHeap()
        assert timers.arm("s-1", START, START) is None
        assert timers.arm("s-1", START - timedelta(seconds=1), START) is None
        assert not timers.has_timer("s-1")
        assert len(timers) == 0

    def test_rearm_replaces_previous_timer(self):
        """At most one live recurring timer per schedule."""
        timers = TimerHeap()
        timers.arm("s-1", START + timedelta(minutes=5), START)
        second = timers.arm("s-1", START + timedelta(minutes=10), START)

        assert len(timers) == 1
        due = timers.pop_due(START + timedelta(hours=1))
        assert due == [second]

    def test_pop_due_in_fire_order(self):
        """Due entries come back ordered by fire time."""
        timers = TimerHeap()
        late = timers.arm("late", START + timedelta(minutes=3), START)
        early = timers.arm("early", START + timedelta(minutes=1), START)

        assert timers.pop_due(START + timedelta(minutes=5)) == [early, late]


class TestTimerHeapClear:
    """Clearing timers."""

    def test_clear_is_idempotent(self):
        """Clearing twice, or clearing an unknown id, is a no-op."""
        timers = TimerHeap()
        timers.arm("s-1", START + timedelta(minutes=5), START)

        assert timers.clear("s-1") is True
        assert timers.clear("s-1") is False
        assert timers.clear("never-armed") is False
        assert timers.pop_due(START + timedelta(hours=1)) == []

    def test_clear_does_not_double_fire(self):
        """A cleared then re-armed schedule fires once."""
        timers = TimerHeap()
        timers.arm("s-1", START + timedelta(minutes=5), START)
        timers.clear("s-1")
        timers.clear("s-1")
        timers.arm("s-1", START + timedelta(minutes=5), START)

        due = timers.pop_due(START + timedelta(minutes=5))
        assert [e.schedule_id for e in due] == ["s-1"]

    def test_clear_all_for_cancels_retries(self):
        """Recurring timer and pending retries of a schedule are cancelled."""
        timers = TimerHeap()
        timers.arm("s-1", START + timedelta(minutes=5), START)
        timers.arm_retry(make_execution(2, schedule_id="s-1"), START + timedelta(minutes=1))
        timers.arm_retry(make_execution(2, schedule_id="s-2"), START + timedelta(minutes=1))

        assert timers.clear_all_for("s-1") == 2
        due = timers.pop_due(START + timedelta(hours=1))
        assert [e.schedule_id for e in due] == ["s-2"]

    def test_clear_recurring_keeps_retries(self):
        """Shutdown drops recurring timers; retries stay armed."""
        timers = TimerHeap()
        timers.arm("s-1", START + timedelta(minutes=5), START)
        timers.arm("s-2", START + timedelta(minutes=7), START)
        retry = timers.arm_retry(make_execution(2, schedule_id="s-1"), START + timedelta(minutes=1))

        assert timers.clear_recurring() == 2

        assert not timers.has_timer("s-1")
        assert not timers.has_timer("s-2")
        assert len(timers) == 1
        assert timers.pop_due(START + timedelta(hours=1)) == [retry]


class TestTimerHeapCompaction:
    """Cancelled entries do not pile up on the heap."""

    def test_rearming_far_future_timer_stays_bounded(self):
        """Re-arming a yearly timer many times keeps the heap small."""
        timers = TimerHeap()
        next_year = START + timedelta(days=365)
        for minute in range(1000):
            timers.arm("s-1", next_year + timedelta(minutes=minute), START)

        assert len(timers) == 1
        assert timers.heap_size <= 2
        (entry,) = timers.pop_due(next_year + timedelta(days=1))
        assert entry.fire_at == next_year + timedelta(minutes=999)

    def test_compaction_keeps_fire_order(self):
        timers = TimerHeap()
        for i in range(10):
            timers.arm(f"s-{i}", START + timedelta(minutes=10 - i), START)
        for i in range(0, 10, 2):
            timers.clear(f"s-{i}")
        timers.clear_all_for("s-1")

        assert len(timers) == 4
        assert timers.heap_size == 4
        due = timers.pop_due(START + timedelta(hours=1))
        assert [e.schedule_id for e in due] == ["s-9", "s-7", "s-5", "s-3"]
        assert timers.heap_size == 0


class TestTimerHeapRetries:
    """One-shot retry entries."""

    def test_retry_entry_carries_execution(self):
        """Retry entries keep the execution they re-enqueue."""
        timers = TimerHeap()
        execution = make_execution(3, schedule_id="s-1")
        timers.arm_retry(execution, START + timedelta(minutes=2))

        assert timers.pending_retries() == 1
        assert timers.pending_retries("s-1") == 1
        assert timers.retry_executions() == [execution]

        (entry,) = timers.pop_due(START + timedelta(minutes=2))
        assert entry.kind is TimerKind.RETRY
        assert entry.execution is execution
        assert timers.pending_retries() == 0

    def test_retry_does_not_replace_recurring(self):
        """Retries and the recurring timer coexist."""
        timers = TimerHeap()
        timers.arm("s-1", START + timedelta(minutes=5), START)
        timers.arm_retry(make_execution(2, schedule_id="s-1"), START + timedelta(minutes=1))

        assert timers.has_timer("s-1")
        assert len(timers) == 2
