"""Timer abstraction used for periodic drains, lock windows and debouncing.

``AsyncioScheduler`` runs on the event loop clock. ``ManualScheduler`` (in
``possync.testing``) implements the same protocol with a virtual clock so
tests can advance time without sleeping.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Optional, Protocol, Set

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Clock plus one-shot timers. Callbacks may return an awaitable."""

    def now(self) -> float:
        """Monotonic time in seconds."""
        ...

    def call_later(self, delay: float, callback: Callback) -> TimerHandle: ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), self._run, callback)

    def _run(self, callback: Callback) -> None:
        try:
            result = callback()
        except Exception as e:
            logger.error(f"Scheduled callback failed: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Scheduled task failed: {task.exception()}", exc_info=task.exception()
            )

    async def shutdown(self) -> None:
        """Cancel callbacks still running as tasks."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


class PeriodicTask:
    """Re-arming timer that invokes a callback every ``interval`` seconds."""

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callback):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._handle: Optional[TimerHandle] = None

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is None:
            self._handle = self._scheduler.call_later(self._interval, self._fire)

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> Any:
        self._handle = self._scheduler.call_later(self._interval, self._fire)
        return self._callback()
