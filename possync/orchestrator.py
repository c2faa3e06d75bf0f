"""Sync orchestrator.

Drains the sync queue against the remote service, one operation at a
time in FIFO order, applying last-write-wins for updates and the
retry/eviction policy for failures. Drains are single-flight: a call made
while a drain is running returns immediately with a skipped report.
"""

import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, List, Optional

from .conflict import resolve
from .connectivity import ConnectivityMonitor
from .entities import get_spec
from .remote.base import RemoteDataService, call_remote
from .scheduler import PeriodicTask, Scheduler
from .storage import LocalStore, SyncQueue
from .types import (
    DEFAULT_MAX_RETRIES,
    DrainReport,
    ErrorKind,
    OperationKind,
    Result,
    SyncConflict,
    SyncFailure,
    SyncOperation,
    strip_local_fields,
    utc_now,
)

logger = logging.getLogger(__name__)

FailureListener = Callable[[SyncFailure], Any]

# Outcomes of a successfully handled operation
PUSHED = "pushed"
SUPERSEDED = "superseded"
SOFT_DELETED = "soft_deleted"

LAST_DRAIN_META_KEY = "last_drain_at"


class SyncOrchestrator:
    """Applies queued operations to the remote service.

    Args:
        store: Local record store.
        queue: Durable sync queue.
        remote: Remote data service.
        connectivity: Connectivity monitor; drains only run while online.
        scheduler: Enables the periodic drain when given.
        max_retries: Failed attempts after which an operation is evicted.
        drain_interval: Seconds between periodic drains.
        remote_timeout: Upper bound for each remote call, None for no bound.
        batch_size: Maximum operations per drain cycle, None for the whole queue.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        remote: RemoteDataService,
        connectivity: ConnectivityMonitor,
        scheduler: Optional[Scheduler] = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        drain_interval: float = 30.0,
        remote_timeout: Optional[float] = 15.0,
        batch_size: Optional[int] = None,
    ):
        self._store = store
        self._queue = queue
        self._remote = remote
        self._connectivity = connectivity
        self.max_retries = max_retries
        self._remote_timeout = remote_timeout
        self._batch_size = batch_size
        self._draining = False
        self._failure_listeners: List[FailureListener] = []
        self._periodic: Optional[PeriodicTask] = None
        if scheduler is not None:
            self._periodic = PeriodicTask(scheduler, drain_interval, self._periodic_drain)
        self.last_report: Optional[DrainReport] = None

    # === Lifecycle ===

    @property
    def state(self) -> str:
        return "draining" if self._draining else "idle"

    @property
    def draining(self) -> bool:
        return self._draining

    def start(self) -> None:
        """Start the periodic drain."""
        if self._periodic is not None:
            self._periodic.start()

    def stop(self) -> None:
        if self._periodic is not None:
            self._periodic.stop()

    async def _periodic_drain(self) -> None:
        if self._connectivity.online and not self._draining:
            await self.drain()

    def on_failure(self, listener: FailureListener) -> Callable[[], None]:
        """Subscribe to evictions; returns an unsubscribe function."""
        self._failure_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._failure_listeners:
                self._failure_listeners.remove(listener)

        return unsubscribe

    # === Drain ===

    async def drain(self) -> DrainReport:
        """Run one drain cycle over the currently queued operations."""
        if self._draining:
            logger.debug("Drain already in progress, skipping")
            return DrainReport(skipped=True)

        if not self._connectivity.online:
            logger.info("Offline - drain skipped, changes stay queued")
            return DrainReport(skipped=True, errors=["Offline - cannot reach remote"])

        self._draining = True
        report = DrainReport()
        try:
            listed = await self._queue.list(limit=self._batch_size)
            if not listed.ok:
                logger.warning(f"Local storage unavailable, skipping sync: {listed.failure.message}")
                report.skipped = True
                report.errors.append(f"Local storage unavailable: {listed.failure.message}")
                return report

            queue = listed.value
            if queue:
                logger.info(f"Syncing {len(queue)} pending operations")
            for op in queue:
                if not self._connectivity.online:
                    logger.info("Went offline during drain, leaving remaining operations queued")
                    break
                outcome = await self._apply(op)
                await self._settle(op, outcome, report)

            await self._store.set_meta(LAST_DRAIN_META_KEY, utc_now())
            if queue:
                logger.info(
                    f"Drain complete: pushed={report.pushed}, superseded={report.superseded}, "
                    f"retried={report.retried}, evicted={report.evicted_count}"
                )
            return report
        finally:
            self._draining = False
            self.last_report = report

    async def _call(self, awaitable: Awaitable[Result]) -> Result:
        return await call_remote(awaitable, self._remote_timeout)

    async def _apply(self, op: SyncOperation) -> Result[str]:
        """Apply one operation remotely. Returns the outcome or the failure."""
        if op.kind is OperationKind.CREATE:
            return await self._apply_create(op)
        if op.kind is OperationKind.UPDATE:
            return await self._apply_update(op)
        return await self._apply_delete(op)

    async def _apply_create(self, op: SyncOperation) -> Result[str]:
        table = get_spec(op.entity).table
        payload = strip_local_fields(op.payload)
        result = await self._call(self._remote.insert(table, payload))
        if result.is_error(ErrorKind.DUPLICATE_KEY):
            # An earlier attempt already landed; continue as an update.
            logger.info(f"Create {op.entity.value}:{op.record_id} already exists, updating")
            return await self._apply_update(op)
        if not result.ok:
            return result
        await self._mark_synced(op)
        return Result.success(PUSHED)

    async def _apply_update(self, op: SyncOperation) -> Result[str]:
        table = get_spec(op.entity).table
        payload = strip_local_fields(op.payload)
        fetched = await self._call(self._remote.select(table, record_id=op.record_id))
        if not fetched.ok:
            return fetched

        if not fetched.value:
            return await self._drop_deleted_remotely(op, payload)

        remote_row = fetched.value[0]
        if resolve(payload, remote_row).remote_wins:
            return await self._adopt_remote(op, payload, remote_row)
        result = await self._call(self._remote.update(table, op.record_id, payload))
        if not result.ok:
            return result
        await self._mark_synced(op)
        return Result.success(PUSHED)

    async def _apply_delete(self, op: SyncOperation) -> Result[str]:
        table = get_spec(op.entity).table
        result = await self._call(self._remote.delete(table, op.record_id))
        if result.ok or result.is_error(ErrorKind.NOT_FOUND):
            return Result.success(PUSHED)
        if result.is_error(ErrorKind.CONSTRAINT):
            return await self._soft_delete(op, result)
        return result

    async def _soft_delete(self, op: SyncOperation, refused: Result) -> Result[str]:
        """Deactivate a record whose hard delete was refused by a constraint."""
        spec = get_spec(op.entity)
        known = await self._last_known_row(op)
        if spec.soft_delete_field is None:
            logger.warning(
                f"Delete of {op.entity.value}:{op.record_id} refused "
                f"({refused.failure.message}) and entity has no soft-delete field"
            )
            # The remote still holds the record; bring it back locally.
            if known is not None and await self._is_current(op):
                await self._store.put(op.entity, known, synced=True)
            return refused

        row = dict(known or {"id": op.record_id})
        row[spec.soft_delete_field] = False
        row["updated_at"] = utc_now()
        logger.warning(
            f"Delete of {op.entity.value}:{op.record_id} violates a constraint, "
            f"deactivating instead"
        )
        result = await self._call(self._remote.update(spec.table, op.record_id, row))
        if not result.ok:
            return result
        if known is not None and await self._is_current(op):
            await self._store.put(op.entity, row, synced=True)
        return Result.success(SOFT_DELETED)

    async def _last_known_row(self, op: SyncOperation) -> Optional[dict]:
        """Full record behind a delete: its payload, the local copy or the remote row."""
        payload = strip_local_fields(op.payload)
        if len(payload) > 1:
            return payload
        local = await self._store.get(op.entity, op.record_id)
        if local.ok and local.value is not None:
            return strip_local_fields(local.value)
        fetched = await self._call(
            self._remote.select(get_spec(op.entity).table, record_id=op.record_id)
        )
        if fetched.ok and fetched.value:
            return strip_local_fields(fetched.value[0])
        return None

    async def _drop_deleted_remotely(self, op: SyncOperation, local: dict) -> Result[str]:
        """The remote row is gone: the deletion wins over a pending update."""
        logger.info(
            f"{op.entity.value}:{op.record_id} was deleted remotely, discarding local update"
        )
        if await self._is_current(op):
            removed = await self._store.delete(op.entity, op.record_id)
            if not removed.ok:
                return removed
        await self._queue.record_conflict(
            SyncConflict(
                id=str(uuid.uuid4()),
                entity=op.entity.value,
                record_id=op.record_id,
                local_version=local,
                remote_version={},
                resolution="remote_deleted",
                resolved_at=utc_now(),
            )
        )
        return Result.success(SUPERSEDED)

    async def _adopt_remote(
        self, op: SyncOperation, local: dict, remote_row: dict
    ) -> Result[str]:
        """Remote is newer: keep its version locally and drop the local intent."""
        logger.info(
            f"Remote version of {op.entity.value}:{op.record_id} is newer, discarding local update"
        )
        if await self._is_current(op):
            stored = await self._store.put(op.entity, remote_row, synced=True)
            if not stored.ok:
                return stored
        await self._queue.record_conflict(
            SyncConflict(
                id=str(uuid.uuid4()),
                entity=op.entity.value,
                record_id=op.record_id,
                local_version=local,
                remote_version=strip_local_fields(remote_row),
                resolution="remote_wins",
                resolved_at=utc_now(),
            )
        )
        return Result.success(SUPERSEDED)

    async def _is_current(self, op: SyncOperation) -> bool:
        """True unless a newer intent for the record was queued meanwhile."""
        current = await self._queue.get(op.entity, op.record_id)
        if not current.ok:
            return False
        return current.value is None or current.value.revision == op.revision

    async def _mark_synced(self, op: SyncOperation) -> None:
        marked = await self._store.mark_synced(
            op.entity, op.record_id, op.payload.get("updated_at")
        )
        if not marked.ok:
            logger.warning(
                f"Pushed {op.entity.value}:{op.record_id} but could not mark it synced: "
                f"{marked.failure.message}"
            )

    # === Settlement ===

    async def _settle(self, op: SyncOperation, outcome: Result[str], report: DrainReport) -> None:
        if outcome.ok:
            removed = await self._queue.remove(op)
            if not removed.ok:
                logger.error(
                    f"Applied {op.entity.value}:{op.record_id} but could not dequeue it: "
                    f"{removed.failure.message}"
                )
            elif not removed.value:
                logger.debug(f"Newer intent pending for {op.entity.value}:{op.record_id}")
            if outcome.value == SUPERSEDED:
                report.superseded += 1
            else:
                report.pushed += 1
            return

        failure = outcome.failure
        op.retry_count += 1
        op.last_error = f"{failure.kind.value}: {failure.message}"
        op.last_attempt_at = utc_now()
        message = (
            f"Failed to sync {op.kind.value} {op.entity.value}:{op.record_id} "
            f"(retry {op.retry_count}/{self.max_retries}): {failure.message}"
        )

        # A refused delete with no soft-delete fallback will not succeed on retry.
        refused_delete = op.kind is OperationKind.DELETE and failure.kind is ErrorKind.CONSTRAINT
        if op.retry_count >= self.max_retries or refused_delete:
            await self._evict(op, report)
            return

        logger.warning(message)
        report.retried += 1
        report.errors.append(message)
        updated = await self._queue.update(op)
        if not updated.ok:
            logger.error(f"Could not persist retry count: {updated.failure.message}")

    async def _evict(self, op: SyncOperation, report: DrainReport) -> None:
        evicted = await self._queue.evict(op)
        if not evicted.ok:
            logger.error(f"Could not evict {op.id}: {evicted.failure.message}")
            return
        failure = evicted.value
        if failure is None:
            logger.debug(f"{op.id} replaced by a newer intent before eviction")
            return

        logger.error(
            f"Operation {op.kind.value} {op.entity.value}:{op.record_id} failed after "
            f"{op.retry_count} attempts, removed from queue: {op.last_error}"
        )
        report.evicted.append(failure)
        report.errors.append(
            f"Gave up on {op.kind.value} {op.entity.value}:{op.record_id}: {op.last_error}"
        )
        for listener in list(self._failure_listeners):
            try:
                result = listener(failure)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Failure listener raised: {e}", exc_info=True)
