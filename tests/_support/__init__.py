"""
Test support utilities for report-scheduler tests.

Fakes and builders that don't fit as pytest fixtures but are shared
across test modules::

    from tests._support.fakes import FakeEngine, cron_schedule
"""
