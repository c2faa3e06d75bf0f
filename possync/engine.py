"""SyncEngine - wiring and lifecycle for the offline-first sync components.

The engine owns one local store, one sync queue and one connectivity
monitor, and hands out an ``EntityRepository`` per entity kind. Coming
back online triggers a drain; a periodic drain runs while online.

Usage:
    engine = await SyncEngine.from_settings()
    await engine.start()
    customers = engine.repository(EntityKind.CUSTOMER)
    outcome = await customers.create({"name": "Ana"})
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Union

from .config import SyncSettings, get_settings
from .connectivity import ConnectivityMonitor, HttpReachabilityProbe
from .entities import EntityKind, resolve_entity
from .mutation import DebouncedWriter, MutationLock
from .orchestrator import LAST_DRAIN_META_KEY, FailureListener, SyncOrchestrator
from .refresh import EntityRefresher, RefreshResult
from .remote.base import RemoteDataService
from .repository import EntityRepository
from .scheduler import AsyncioScheduler, Scheduler
from .storage import LocalStore, SQLiteDatabase, SyncQueue
from .types import DrainReport, Result, SyncConflict, SyncFailure

logger = logging.getLogger(__name__)

RefreshListener = Callable[[RefreshResult], Any]


@dataclass
class IntegrityIssue:
    entity: str
    record_id: str
    message: str


@dataclass
class IntegrityReport:
    """Unsynced records that have no pending operation to carry them."""

    checked: int = 0
    issues: List[IntegrityIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def summary(self) -> str:
        lines = [f"Integrity: {self.checked} unsynced records checked, {len(self.issues)} issues"]
        for issue in self.issues:
            lines.append(f"  {issue.entity}:{issue.record_id}: {issue.message}")
        return "\n".join(lines)


class SyncEngine:
    """Facade over the store, queue, orchestrator and refresh strategy."""

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        remote: RemoteDataService,
        connectivity: ConnectivityMonitor,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[SyncSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.scheduler = scheduler or AsyncioScheduler()
        self.store = store
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.lock = MutationLock(self.settings.mutation_lock_window, self.scheduler)
        self.orchestrator = SyncOrchestrator(
            store,
            queue,
            remote,
            connectivity,
            self.scheduler,
            max_retries=self.settings.max_retries,
            drain_interval=self.settings.drain_interval,
            remote_timeout=self.settings.remote_timeout,
            batch_size=self.settings.queue_batch_size,
        )
        self.refresher = EntityRefresher(
            store,
            queue,
            remote,
            connectivity,
            policy=self.settings.empty_snapshot_policy,
            remote_timeout=self.settings.remote_timeout,
        )
        self._debouncer = DebouncedWriter(
            self._write_debounced, self.settings.debounce_quiet_period, self.scheduler
        )
        self._repositories: Dict[EntityKind, EntityRepository] = {}
        self._refresh_listeners: List[RefreshListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    @classmethod
    async def from_settings(
        cls,
        settings: Optional[SyncSettings] = None,
        remote: Optional[RemoteDataService] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> "SyncEngine":
        """Build an engine backed by SQLite and, unless given a remote, Supabase."""
        settings = settings or get_settings()
        scheduler = scheduler or AsyncioScheduler()
        db = SQLiteDatabase(settings.db_path)
        if remote is None:
            from .remote.supabase import create_remote

            remote = await create_remote(settings)

        probe = None
        health_url = settings.resolved_health_url()
        if health_url:
            headers = {"apikey": settings.supabase_key} if settings.supabase_key else None
            probe = HttpReachabilityProbe(health_url, headers=headers)
        connectivity = ConnectivityMonitor(
            probe, scheduler, probe_interval=settings.probe_interval, initial=probe is None
        )
        return cls(LocalStore(db), SyncQueue(db), remote, connectivity, scheduler, settings)

    # === Lifecycle ===

    async def start(self, initial_sync: bool = True) -> None:
        """Read connectivity, start timers, and sync if online."""
        if self._unsubscribe is None:
            self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_change)
        online = await self.connectivity.start()
        self.orchestrator.start()
        if online:
            await self.orchestrator.drain()
            if initial_sync:
                await self.refresher.refresh_all()

    async def stop(self) -> None:
        await self._debouncer.flush()
        self.orchestrator.stop()
        self.connectivity.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if isinstance(self.scheduler, AsyncioScheduler):
            await self.scheduler.shutdown()

    async def _on_connectivity_change(self, online: bool) -> None:
        if online:
            await self.orchestrator.drain()

    # === Reads and writes ===

    def repository(self, entity: Union[EntityKind, str]) -> EntityRepository:
        kind = resolve_entity(entity)
        if kind not in self._repositories:
            self._repositories[kind] = EntityRepository(
                kind,
                self.store,
                self.queue,
                self.remote,
                self.connectivity,
                self.refresher,
                self.lock,
                remote_timeout=self.settings.remote_timeout,
            )
        return self._repositories[kind]

    def debounced_update(
        self, entity: Union[EntityKind, str], record_id: str, fields: Dict[str, Any]
    ) -> None:
        """Queue field changes that are written once input settles."""
        self._debouncer.submit((resolve_entity(entity), record_id), fields)

    async def flush_pending_updates(self) -> None:
        await self._debouncer.flush()

    async def _write_debounced(self, key: Hashable, fields: Dict[str, Any]) -> None:
        kind, record_id = key
        outcome = await self.repository(kind).update(record_id, fields)
        if outcome.error is not None:
            logger.warning(
                f"Debounced update of {kind.value}:{record_id} failed: {outcome.error.message}"
            )

    # === Sync ===

    async def drain(self) -> DrainReport:
        return await self.orchestrator.drain()

    async def refresh(
        self, entity: Union[EntityKind, str], incremental: bool = False
    ) -> RefreshResult:
        return await self.refresher.refresh(entity, incremental=incremental)

    async def refresh_all(self, incremental: bool = False) -> Dict[EntityKind, RefreshResult]:
        return await self.refresher.refresh_all(incremental=incremental)

    async def notify_remote_change(self, entity: Union[EntityKind, str]) -> Optional[RefreshResult]:
        """Entry point for remote change notifications.

        Skipped while a local mutation holds the lock; returns None then.
        """
        pending = self.lock.guard(self._refresh_and_publish)(resolve_entity(entity))
        if pending is None:
            return None
        return await pending

    async def _refresh_and_publish(self, kind: EntityKind) -> RefreshResult:
        result = await self.refresher.refresh(kind)
        for listener in list(self._refresh_listeners):
            try:
                outcome = listener(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Refresh listener failed: {e}", exc_info=True)
        return result

    def on_refresh(self, listener: RefreshListener) -> Callable[[], None]:
        """Subscribe to refreshes caused by remote change notifications."""
        self._refresh_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._refresh_listeners:
                self._refresh_listeners.remove(listener)

        return unsubscribe

    def on_failure(self, listener: FailureListener) -> Callable[[], None]:
        return self.orchestrator.on_failure(listener)

    # === Failure log and conflicts ===

    async def list_failures(self, limit: int = 100) -> Result[List[SyncFailure]]:
        return await self.queue.list_failures(limit)

    async def requeue_failures(self, failure_ids: Optional[Iterable[str]] = None) -> Result[int]:
        """Give evicted operations another round of retries."""
        requeued = await self.queue.requeue_failures(failure_ids)
        if requeued.ok and requeued.value:
            logger.info(f"Requeued {requeued.value} failed operations")
        return requeued

    async def list_conflicts(self, limit: int = 100) -> Result[List[SyncConflict]]:
        return await self.queue.list_conflicts(limit)

    # === Diagnostics ===

    async def status(self) -> Dict[str, Any]:
        """Sync status: queue counts, connectivity and last drain time."""
        queue_status = await self.queue.status()
        last_drain = await self.store.get_meta(LAST_DRAIN_META_KEY)
        status: Dict[str, Any] = {
            "online": self.connectivity.online,
            "state": self.orchestrator.state,
            "last_drain_at": last_drain.value if last_drain.ok else None,
        }
        if queue_status.ok:
            status.update(queue_status.value)
        else:
            status["error"] = queue_status.failure.message
        unsynced = {}
        for kind in EntityKind:
            count = await self.store.count(kind, synced=False)
            if count.ok and count.value:
                unsynced[kind.value] = count.value
        status["unsynced"] = unsynced
        return status

    async def verify_integrity(self) -> IntegrityReport:
        """Find unsynced records that no queued operation will ever push."""
        report = IntegrityReport()
        for kind in EntityKind:
            unsynced = await self.store.get_unsynced(kind)
            pending = await self.queue.pending_ids(kind)
            if not unsynced.ok or not pending.ok:
                report.issues.append(
                    IntegrityIssue(kind.value, "*", "local storage unavailable")
                )
                continue
            for record in unsynced.value:
                report.checked += 1
                if record["id"] not in pending.value:
                    report.issues.append(
                        IntegrityIssue(kind.value, record["id"], "unsynced with no pending operation")
                    )
        if not report.ok:
            logger.warning(report.summary())
        return report
