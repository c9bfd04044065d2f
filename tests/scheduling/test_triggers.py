"""Tests for event and threshold trigger matching."""

from datetime import timedelta

from report_scheduler.enums import ScheduleType
from report_scheduler.models import EventTrigger, ReportSchedule, ThresholdTrigger
from report_scheduler.scheduling.triggers import ThresholdGate, match_event
from tests._support.fakes import START


def event_schedule(schedule_id: str, *triggers: EventTrigger, active: bool = True) -> ReportSchedule:
    return ReportSchedule(
        id=schedule_id,
        report_id="r",
        tenant_id="t",
        schedule_type=ScheduleType.EVENT_DRIVEN,
        event_triggers=list(triggers),
        is_active=active,
    )


def threshold_schedule(schedule_id: str, *triggers: ThresholdTrigger) -> ReportSchedule:
    return ReportSchedule(
        id=schedule_id,
        report_id="r",
        tenant_id="t",
        schedule_type=ScheduleType.THRESHOLD,
        threshold_triggers=list(triggers),
    )


class TestEventMatching:
    """Module/event names plus payload conditions."""

    def test_matches_module_and_event(self):
        s = event_schedule("a", EventTrigger(module="billing", event="invoice_paid"))
        assert match_event([s], "billing", "invoice_paid") == [s]
        assert match_event([s], "billing", "invoice_voided") == []
        assert match_event([s], "crm", "invoice_paid") == []

    def test_conditions_must_all_hold(self):
        trigger = EventTrigger(module="billing", event="invoice_paid", conditions={"region": "eu"})
        s = event_schedule("a", trigger)

        assert match_event([s], "billing", "invoice_paid", {"region": "eu", "x": 1}) == [s]
        assert match_event([s], "billing", "invoice_paid", {"region": "us"}) == []
        assert match_event([s], "billing", "invoice_paid") == []

    def test_inactive_and_other_types_ignored(self):
        trigger = EventTrigger(module="m", event="e")
        inactive = event_schedule("a", trigger, active=False)
        cron = ReportSchedule(id="b", report_id="r", tenant_id="t", event_triggers=[trigger])
        assert match_event([inactive, cron], "m", "e") == []


class TestThresholdGate:
    """Operator comparison with per-check_interval debounce."""

    def test_operators(self):
        assert ThresholdTrigger("cpu", ">", 80).matches("cpu", 81)
        assert not ThresholdTrigger("cpu", ">", 80).matches("cpu", 80)
        assert ThresholdTrigger("cpu", ">=", 80).matches("cpu", 80)
        assert ThresholdTrigger("cpu", "<", 10).matches("cpu", 5)
        assert ThresholdTrigger("cpu", "<=", 10).matches("cpu", 10)
        assert ThresholdTrigger("cpu", "=", 10).matches("cpu", 10)
        assert not ThresholdTrigger("cpu", ">", 80).matches("memory", 99)

    def test_debounce_within_check_interval(self):
        """A metric that stays high fires once per check_interval."""
        gate = ThresholdGate()
        s = threshold_schedule("a", ThresholdTrigger("queue_depth", ">", 100, check_interval=5))

        assert gate.match([s], "queue_depth", 150, START) == [s]
        assert gate.match([s], "queue_depth", 160, START + timedelta(minutes=4)) == []
        assert gate.match([s], "queue_depth", 170, START + timedelta(minutes=5)) == [s]

    def test_below_threshold_does_not_close_gate(self):
        gate = ThresholdGate()
        s = threshold_schedule("a", ThresholdTrigger("errors", ">=", 10))

        assert gate.match([s], "errors", 3, START) == []
        assert gate.match([s], "errors", 12, START + timedelta(seconds=1)) == [s]

    def test_forget_reopens_gate(self):
        gate = ThresholdGate()
        s = threshold_schedule("a", ThresholdTrigger("errors", ">", 0))
        gate.match([s], "errors", 1, START)

        gate.forget("a")

        assert gate.match([s], "errors", 1, START) == [s]
