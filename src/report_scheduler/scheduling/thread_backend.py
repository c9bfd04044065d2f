"""Daemon-thread scheduler backend.

For callers without a running event loop (sync applications, scripts).
The backend owns a private event loop in a daemon thread; every tick and
every report execution started by a tick runs on that loop, which stays
alive between ticks.

┌──────────────────────────────────────────────────────────────────────────────┐
│  THREAD BACKEND ARCHITECTURE                                                  │
│                                                                               │
│   start()                                                                     │
│      │                                                                        │
│      ▼                                                                        │
│   ┌─────────────────────────────────────────────────────────┐                │
│   │  Daemon Thread                                          │                │
│   │                                                         │                │
│   │   loop = asyncio.new_event_loop()                       │                │
│   │   loop.run_until_complete(_run()):                      │                │
│   │       while not stop_event.is_set():                    │                │
│   │           await asyncio.sleep(interval)                 │                │
│   │           tick_count += 1                               │                │
│   │           await tick_callback()                         │                │
│   │   cancel leftover tasks, close loop                     │                │
│   └─────────────────────────────────────────────────────────┘                │
│                                                                               │
│   stop()                                                                      │
│      stop_event.set(); cancel the tick task                                   │
│      thread.join(timeout=5.0)                                                 │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime
from typing import Any

from report_scheduler.logging import get_logger

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class ThreadSchedulerBackend:
    """Tick loop on a private event loop in a daemon thread.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>>
        >>> async def my_tick():
        ...     print("Tick!")
        ...
        >>> backend.start(my_tick, interval_seconds=1.0)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._main_task: asyncio.Task | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 1.0
        self._started = False
        self._lock = threading.Lock()

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 1.0,
    ) -> None:
        """Start the scheduler loop in a daemon thread.

        Args:
            tick_callback: Async function to call on each tick.
            interval_seconds: How often to tick (default: 1s).
        """
        if self._started:
            logger.warning("thread_backend_already_started")
            return

        self._interval = interval_seconds
        self._stop_event.clear()
        ready = threading.Event()

        async def _run() -> None:
            self._main_task = asyncio.current_task()
            ready.set()
            while not self._stop_event.is_set():
                await asyncio.sleep(interval_seconds)
                with self._lock:
                    self._tick_count += 1
                    self._last_tick = datetime.now(UTC)
                try:
                    await tick_callback()
                except Exception:
                    logger.exception("tick_failed", backend=self.name)

        def _thread_main() -> None:
            loop = asyncio.new_event_loop()
            self._loop = loop
            asyncio.set_event_loop(loop)
            logger.info("thread_backend_started", interval_seconds=interval_seconds)
            try:
                loop.run_until_complete(_run())
            except asyncio.CancelledError:
                pass
            finally:
                self._drain(loop)
                loop.close()
                ready.set()
                logger.info("thread_backend_stopped")

        self._thread = threading.Thread(
            target=_thread_main, daemon=True, name="report-scheduler"
        )
        self._thread.start()
        ready.wait(timeout=5.0)
        self._started = True

    @staticmethod
    def _drain(loop: asyncio.AbstractEventLoop) -> None:
        """Cancel tasks still pending on the loop (report executions) and let them unwind."""
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))

    def stop(self) -> None:
        """Stop the scheduler loop.

        Waits up to 5 seconds for the current tick to complete.
        """
        if not self._started:
            return

        self._stop_event.set()
        loop, task = self._loop, self._main_task
        if loop is not None and task is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(task.cancel)
            except RuntimeError:
                # loop closed between the check and the call
                pass

        if self._thread:
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("thread_backend_did_not_stop_cleanly")

        self._started = False
        self._loop = None
        self._main_task = None
        logger.info("thread_backend_shutdown_complete")

    def health(self) -> dict[str, Any]:
        """Return backend health status.

        Returns:
            dict with healthy, backend, tick_count, last_tick
        """
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
        """Check if backend is currently running."""
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        """Get number of ticks executed."""
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        """Get timestamp of last tick."""
        return self._last_tick
