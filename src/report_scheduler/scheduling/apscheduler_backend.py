"""APScheduler-based scheduler backend.

Wraps APScheduler 3.x ``AsyncIOScheduler`` to provide the
``SchedulerBackend`` protocol for deployments that already run
APScheduler and want its misfire handling and job introspection.

Requires the ``[apscheduler]`` extra::

    pip install report-scheduler[apscheduler]

.. note::

    The tick job is a coroutine run by APScheduler's asyncio executor on
    the loop that called :meth:`APSchedulerBackend.start`, so report
    executions outlive the tick that started them. ``max_instances=1``
    and ``coalesce=True`` keep a slow tick from stacking up.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

from report_scheduler.logging import get_logger

from .protocol import TickCallback

logger = get_logger(__name__)

TICK_JOB_ID = "report_scheduler_tick"


def _require_apscheduler():
    """Validate that apscheduler is installed."""
    try:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler  # noqa: F401

        return AsyncIOScheduler
    except ImportError:
        raise ImportError(
            "APScheduler is required for APSchedulerBackend. "
            "Install it with: pip install report-scheduler[apscheduler]"
        ) from None


class APSchedulerBackend:
    """APScheduler-based scheduler backend.

    Implements the ``SchedulerBackend`` protocol with an interval job
    that awaits the tick callback at the configured frequency.

    Example::

        >>> backend = APSchedulerBackend()
        >>> backend.start(tick_callback, interval_seconds=1.0)   # in a running loop
        >>> # … later …
        >>> backend.stop()
    """

    name: str = "apscheduler"

    def __init__(self) -> None:
        self._scheduler_cls = _require_apscheduler()
        self._scheduler = None
        self._tick_count: int = 0
        self._last_tick: datetime | None = None
        self._callback: TickCallback | None = None

    # ------------------------------------------------------------------
    # SchedulerBackend protocol
    # ------------------------------------------------------------------

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 1.0,
    ) -> None:
        """Start the APScheduler loop.

        Must be called with a running event loop.

        Args:
            tick_callback: Async function called on each tick.
            interval_seconds: How often to tick (default: 1 s).
        """
        if self._scheduler is not None and self._scheduler.running:
            logger.warning("apscheduler_backend_already_started")
            return

        self._callback = tick_callback
        self._scheduler = self._scheduler_cls(event_loop=asyncio.get_running_loop())

        async def _tick_wrapper() -> None:
            self._tick_count += 1
            self._last_tick = datetime.now(UTC)
            try:
                await tick_callback()
            except Exception:
                logger.exception("tick_failed", backend=self.name)

        self._scheduler.add_job(
            _tick_wrapper,
            "interval",
            seconds=interval_seconds,
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("apscheduler_backend_started", interval_seconds=interval_seconds)

    def stop(self) -> None:
        """Stop the APScheduler loop. Idempotent."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("apscheduler_backend_stopped", tick_count=self._tick_count)

    def health(self) -> dict[str, Any]:
        """Return backend health status.

        Returns:
            dict with healthy, backend, tick_count, last_tick, and
            scheduled_jobs count.
        """
        running = bool(self._scheduler is not None and self._scheduler.running)
        return {
            "healthy": running,
            "backend": self.name,
            "tick_count": self._tick_count,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "scheduled_jobs": len(self._scheduler.get_jobs()) if running else 0,
        }
