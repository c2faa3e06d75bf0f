"""Connectivity monitor.

An explicitly constructed service holding the online/offline state. The
initial state comes from a reachability probe; afterwards state changes
arrive either from platform events (``set_online``) or from re-probing
(``check``, optionally on a timer). Subscribers are awaited on every
transition, so an ``offline -> online`` listener that drains the queue has
finished by the time ``set_online(True)`` returns.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

import httpx

from .scheduler import PeriodicTask, Scheduler

logger = logging.getLogger(__name__)

Listener = Callable[[bool], Union[None, Awaitable[None]]]
Probe = Callable[[], Awaitable[bool]]


class HttpReachabilityProbe:
    """Probe that treats any HTTP response from a health URL as reachable."""

    def __init__(self, url: str, timeout: float = 5.0, headers: Optional[dict] = None):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}

    async def __call__(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                await client.get(self.url, headers=self.headers)
            return True
        except httpx.HTTPError as e:
            logger.debug(f"Reachability probe failed: {e}")
            return False


class ConnectivityMonitor:
    """Process-wide online/offline state with subscriber notification."""

    def __init__(
        self,
        probe: Optional[Probe] = None,
        scheduler: Optional[Scheduler] = None,
        probe_interval: Optional[float] = None,
        initial: bool = False,
    ):
        self._probe = probe
        self._online = initial
        self._listeners: List[Listener] = []
        self._poller: Optional[PeriodicTask] = None
        if probe is not None and probe_interval:
            if scheduler is None:
                raise ValueError("probe_interval requires a scheduler")
            self._poller = PeriodicTask(scheduler, probe_interval, self.check)

    @property
    def online(self) -> bool:
        return self._online

    async def start(self) -> bool:
        """Read the initial state from the probe and start periodic probing."""
        if self._probe is not None:
            self._online = await self._safe_probe()
            logger.info(f"Connectivity initial state: {'online' if self._online else 'offline'}")
        if self._poller is not None:
            self._poller.start()
        return self._online

    def stop(self) -> None:
        if self._poller is not None:
            self._poller.stop()

    async def check(self) -> bool:
        """Re-probe reachability and apply the result."""
        if self._probe is None:
            return self._online
        await self.set_online(await self._safe_probe())
        return self._online

    async def set_online(self, online: bool) -> None:
        """Apply a platform connectivity event."""
        if online == self._online:
            return
        self._online = online
        if online:
            logger.info("Online - starting sync")
        else:
            logger.info("Offline - changes will be saved locally")
        await self._notify(online)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(self, online: bool) -> None:
        for listener in list(self._listeners):
            try:
                result: Any = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}", exc_info=True)

    async def _safe_probe(self) -> bool:
        try:
            return bool(await self._probe())
        except Exception as e:
            logger.debug(f"Connectivity probe error: {e}", exc_info=True)
            return False
