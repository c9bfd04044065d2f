"""In-loop asyncio scheduler backend.

The DEFAULT backend. Ticks run as a background task inside the event
loop that called :meth:`AsyncioSchedulerBackend.start`, so report
executions started by a tick share that loop with the rest of the
application.

┌──────────────────────────────────────────────────────────────────────────────┐
│  ASYNCIO BACKEND                                                              │
│                                                                               │
│   start()  (inside a running loop)                                           │
│      │                                                                        │
│      ▼                                                                        │
│   loop.create_task(_run)                                                      │
│      while True:                                                              │
│          await asyncio.sleep(interval)                                        │
│          tick_count += 1                                                      │
│          await tick_callback()   ◄── exceptions logged, loop continues       │
│                                                                               │
│   stop()                                                                      │
│      task.cancel()                                                            │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

from report_scheduler.logging import get_logger

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class AsyncioSchedulerBackend:
    """Tick loop as a task on the caller's running event loop.

    Example:
        >>> async def main():
        ...     backend = AsyncioSchedulerBackend()
        ...     backend.start(my_tick, interval_seconds=1.0)
        ...     await asyncio.sleep(10)
        ...     backend.stop()
    """

    name = "asyncio"

    def __init__(self) -> None:
        self._task: asyncio.Task | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 1.0

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 1.0,
    ) -> None:
        """Start ticking on the running loop.

        Raises:
            RuntimeError: when called with no running event loop
        """
        if self.is_running:
            logger.warning("asyncio_backend_already_started")
            return

        loop = asyncio.get_running_loop()
        self._interval = interval_seconds
        self._task = loop.create_task(
            self._run(tick_callback, interval_seconds), name="report-scheduler-tick"
        )
        logger.info("asyncio_backend_started", interval_seconds=interval_seconds)

    async def _run(self, tick_callback: TickCallback, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self._tick_count += 1
            self._last_tick = datetime.now(UTC)
            try:
                await tick_callback()
            except Exception:
                logger.exception("tick_failed", backend=self.name)

    def stop(self) -> None:
        """Cancel the tick task. Idempotent."""
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.info("asyncio_backend_stopped", tick_count=self._tick_count)

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.is_running,
            "backend": self.name,
            "tick_count": self._tick_count,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "interval_seconds": self._interval,
        }

    def get_health(self) -> BackendHealth:
        """Return structured health status."""
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        return self._tick_count
