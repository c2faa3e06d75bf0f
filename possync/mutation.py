"""Local write coordination.

``MutationLock`` suppresses externally triggered refreshes for a short
window after a local write, so a remote change notification caused by our
own write does not overwrite optimistic state before the write is
acknowledged. ``DebouncedWriter`` collapses bursts of field updates for the
same key into one write after a quiet period.
"""

import functools
import inspect
import logging
from typing import Any, Callable, Dict, Hashable, Optional

from .scheduler import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class MutationLock:
    """Time-window flag set by local writes. Never blocks."""

    def __init__(self, window: float = 2.0, scheduler: Optional[Scheduler] = None):
        self.window = window
        self._scheduler = scheduler or AsyncioScheduler()
        self._until: Optional[float] = None
        self.skipped = 0

    @property
    def locked(self) -> bool:
        return self._until is not None and self._scheduler.now() < self._until

    def acquire(self) -> None:
        """Start (or extend) the suppression window."""
        self._until = self._scheduler.now() + self.window

    def release(self) -> None:
        self._until = None

    def guard(self, callback: Callable[..., Any]) -> Callable[..., Any]:
        """Wrap a refresh callback so it is skipped while the lock is held."""

        @functools.wraps(callback)
        def guarded(*args, **kwargs):
            if self.locked:
                self.skipped += 1
                logger.debug("Mutation in progress, skipping external refresh")
                return None
            return callback(*args, **kwargs)

        return guarded


class DebouncedWriter:
    """Coalesces field updates per key and writes them after a quiet period.

    Args:
        write: Called as ``write(key, fields)``; may be sync or async.
        quiet_period: Seconds without a new submission before writing.
        scheduler: Timer source.
    """

    def __init__(
        self,
        write: Callable[[Hashable, Dict[str, Any]], Any],
        quiet_period: float = 2.0,
        scheduler: Optional[Scheduler] = None,
    ):
        self._write = write
        self.quiet_period = quiet_period
        self._scheduler = scheduler or AsyncioScheduler()
        self._pending: Dict[Hashable, Dict[str, Any]] = {}
        self._timers: Dict[Hashable, TimerHandle] = {}

    @property
    def pending(self) -> Dict[Hashable, Dict[str, Any]]:
        return {key: dict(fields) for key, fields in self._pending.items()}

    def submit(self, key: Hashable, fields: Dict[str, Any]) -> None:
        self._pending.setdefault(key, {}).update(fields)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._timers[key] = self._scheduler.call_later(
            self.quiet_period, functools.partial(self._fire, key)
        )

    async def flush(self, key: Optional[Hashable] = None) -> None:
        """Write pending updates now, for one key or all of them."""
        keys = [key] if key is not None else list(self._pending)
        for k in keys:
            timer = self._timers.pop(k, None)
            if timer is not None:
                timer.cancel()
            await self._fire(k)

    def cancel(self, key: Optional[Hashable] = None) -> None:
        """Drop pending updates without writing them."""
        keys = [key] if key is not None else list(self._pending)
        for k in keys:
            timer = self._timers.pop(k, None)
            if timer is not None:
                timer.cancel()
            self._pending.pop(k, None)

    async def _fire(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        fields = self._pending.pop(key, None)
        if fields is None:
            return
        try:
            result = self._write(key, fields)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Debounced write for {key!r} failed: {e}", exc_info=True)
