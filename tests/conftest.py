"""
Shared pytest fixtures for report-scheduler tests.

Tests drive the service the way a backend would: advance the clock,
call ``fire_due_timers()`` / ``process_queue()`` / ``tick()``, then
``await service.wait_idle()``.
"""

from __future__ import annotations

from typing import Any

import pytest
import structlog

from report_scheduler.scheduling import SchedulingService
from report_scheduler.settings import SchedulerSettings
from tests._support.fakes import FakeClock, FakeEngine, ManualBackend


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Keep logging configuration from leaking between tests."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def backend() -> ManualBackend:
    return ManualBackend()


@pytest.fixture
def settings() -> SchedulerSettings:
    return SchedulerSettings(_env_file=None, off_peak_timezone="UTC")


@pytest.fixture
def make_service(engine, backend, clock, settings):
    """Factory: build a service, overriding any settings field."""

    def _make(**overrides: Any) -> SchedulingService:
        registry = overrides.pop("trigger_registry", None)
        persistence = overrides.pop("persistence", None)
        effective = settings.model_copy(update=overrides) if overrides else settings
        return SchedulingService(
            engine,
            backend=backend,
            settings=effective,
            trigger_registry=registry,
            persistence=persistence,
            clock=clock,
        )

    return _make


@pytest.fixture
def service(make_service) -> SchedulingService:
    return make_service()
