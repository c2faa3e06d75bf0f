"""Caller-level reads and writes for one entity kind.

Writes are optimistic: the local store is updated first, then the remote
is tried immediately when online. A write that cannot reach the remote,
or a record that already has a pending intent, goes through the sync
queue instead. Callers get a ``WriteOutcome`` describing which path was
taken.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from .connectivity import ConnectivityMonitor
from .entities import EntityKind, EntityRecord, get_spec, prepare_new, to_record, to_row
from .mutation import MutationLock
from .refresh import EntityRefresher
from .remote.base import RemoteDataService, call_remote
from .storage import LocalStore, SyncQueue
from .types import (
    ErrorKind,
    Failure,
    OperationKind,
    Result,
    WriteOutcome,
    strip_local_fields,
    utc_now,
)

logger = logging.getLogger(__name__)


class EntityRepository:
    """Optimistic write path and read path for a single entity kind."""

    def __init__(
        self,
        entity: Union[EntityKind, str],
        store: LocalStore,
        queue: SyncQueue,
        remote: RemoteDataService,
        connectivity: ConnectivityMonitor,
        refresher: EntityRefresher,
        lock: MutationLock,
        remote_timeout: Optional[float] = 15.0,
    ):
        self.spec = get_spec(entity)
        self.entity = self.spec.kind
        self._store = store
        self._queue = queue
        self._remote = remote
        self._connectivity = connectivity
        self._refresher = refresher
        self._lock = lock
        self._remote_timeout = remote_timeout

    async def _call(self, awaitable) -> Result:
        return await call_remote(awaitable, self._remote_timeout)

    async def _can_write_through(self, record_id: str) -> bool:
        """Immediate remote writes only when online and nothing is queued for the record."""
        if not self._connectivity.online:
            return False
        pending = await self._queue.has_pending(self.entity, record_id)
        return pending.ok and not pending.value

    async def _enqueue(
        self,
        kind: OperationKind,
        payload: Dict[str, Any],
        record: Optional[Dict[str, Any]],
        **flags: Any,
    ) -> WriteOutcome:
        queued = await self._queue.enqueue(self.entity, kind, payload)
        if not queued.ok:
            logger.error(
                f"Could not queue {kind.value} {self.entity.value}:{payload['id']}: "
                f"{queued.failure.message}"
            )
            return WriteOutcome(record=record, error=queued.failure, **flags)
        logger.info(f"Saved {self.entity.value}:{payload['id']} locally, will sync when online")
        return WriteOutcome(record=record, queued=True, **flags)

    # === Writes ===

    async def create(self, record: Union[EntityRecord, Dict[str, Any]]) -> WriteOutcome:
        row = prepare_new(to_row(record))
        self._lock.acquire()
        stored = await self._store.put(self.entity, row, synced=False)
        if not stored.ok:
            return WriteOutcome(record=None, error=stored.failure)

        if await self._can_write_through(row["id"]):
            result = await self._call(self._remote.insert(self.spec.table, row))
            if result.is_error(ErrorKind.DUPLICATE_KEY):
                result = await self._call(self._remote.update(self.spec.table, row["id"], row))
            if result.ok:
                return await self._confirm(row, stored.value)
            logger.warning(
                f"Remote create of {self.entity.value}:{row['id']} failed, queueing: "
                f"{result.failure.message}"
            )
        return await self._enqueue(OperationKind.CREATE, row, stored.value)

    async def update(self, record_id: str, changes: Dict[str, Any]) -> WriteOutcome:
        current = await self._store.get(self.entity, record_id)
        if not current.ok:
            return WriteOutcome(record=None, error=current.failure)
        if current.value is None:
            return WriteOutcome(
                record=None,
                error=Failure(ErrorKind.NOT_FOUND, f"{self.entity.value}:{record_id} not found"),
            )

        row = {**strip_local_fields(current.value), **strip_local_fields(changes)}
        row["id"] = record_id
        row["updated_at"] = utc_now()
        self._lock.acquire()
        stored = await self._store.put(self.entity, row, synced=False)
        if not stored.ok:
            return WriteOutcome(record=None, error=stored.failure)

        if await self._can_write_through(record_id):
            result = await self._call(self._remote.update(self.spec.table, record_id, row))
            if result.ok:
                return await self._confirm(row, stored.value)
            logger.warning(
                f"Remote update of {self.entity.value}:{record_id} failed, queueing: "
                f"{result.failure.message}"
            )
        return await self._enqueue(OperationKind.UPDATE, row, stored.value)

    async def delete(self, record_id: str) -> WriteOutcome:
        current = await self._store.get(self.entity, record_id)
        if not current.ok:
            return WriteOutcome(record=None, error=current.failure)
        payload = strip_local_fields(current.value) if current.value else {"id": record_id}

        self._lock.acquire()
        write_through = await self._can_write_through(record_id)
        removed = await self._store.delete(self.entity, record_id)
        if not removed.ok:
            return WriteOutcome(record=None, error=removed.failure)

        if write_through:
            result = await self._call(self._remote.delete(self.spec.table, record_id))
            if result.ok or result.is_error(ErrorKind.NOT_FOUND):
                return WriteOutcome(record=None, synced=True)
            if result.is_error(ErrorKind.CONSTRAINT):
                return await self._soft_delete(payload, result.failure)
            logger.warning(
                f"Remote delete of {self.entity.value}:{record_id} failed, queueing: "
                f"{result.failure.message}"
            )
        return await self._enqueue(OperationKind.DELETE, payload, None)

    async def _soft_delete(self, payload: Dict[str, Any], refused: Failure) -> WriteOutcome:
        field = self.spec.soft_delete_field
        if field is None or len(payload) <= 1:
            logger.warning(
                f"Delete of {self.entity.value}:{payload['id']} refused: {refused.message}"
            )
            if len(payload) > 1:
                await self._store.put(self.entity, payload, synced=True)
            return WriteOutcome(record=payload if len(payload) > 1 else None, error=refused)

        row = {**payload, field: False, "updated_at": utc_now()}
        logger.warning(
            f"Delete of {self.entity.value}:{payload['id']} violates a constraint, "
            f"deactivating instead"
        )
        stored = await self._store.put(self.entity, row, synced=False)
        if not stored.ok:
            return WriteOutcome(record=None, error=stored.failure, soft_deleted=True)
        result = await self._call(self._remote.update(self.spec.table, row["id"], row))
        if result.ok:
            outcome = await self._confirm(row, stored.value)
            outcome.soft_deleted = True
            return outcome
        return await self._enqueue(OperationKind.UPDATE, row, stored.value, soft_deleted=True)

    async def _confirm(self, row: Dict[str, Any], stored: Dict[str, Any]) -> WriteOutcome:
        marked = await self._store.mark_synced(self.entity, row["id"], row["updated_at"])
        synced = marked.ok and marked.value
        return WriteOutcome(record={**stored, "synced": synced}, synced=True)

    # === Reads ===

    async def get_by_id(self, record_id: str) -> Result[Optional[Dict[str, Any]]]:
        """Local lookup, falling back to the remote when the record is missing."""
        tombstones = await self._queue.pending_delete_ids(self.entity)
        if tombstones.ok and record_id in tombstones.value:
            return Result.success(None)

        local = await self._store.get(self.entity, record_id)
        if not local.ok or local.value is not None or not self._connectivity.online:
            return local

        fetched = await self._call(self._remote.select(self.spec.table, record_id=record_id))
        if not fetched.ok:
            logger.warning(
                f"Could not fetch {self.entity.value}:{record_id} from remote: "
                f"{fetched.failure.message}"
            )
            return Result.success(None)
        if not fetched.value:
            return Result.success(None)
        return await self._store.put(self.entity, fetched.value[0], synced=True)

    async def get(self, record_id: str) -> Optional[EntityRecord]:
        """Typed view of ``get_by_id``."""
        found = await self.get_by_id(record_id)
        if not found.ok or found.value is None:
            return None
        return to_record(self.entity, found.value)

    async def list(self, refresh: bool = True) -> Result[List[Dict[str, Any]]]:
        """All visible records, refreshed from the remote when online."""
        if not refresh:
            return await self._refresher.read_local(self.entity)
        result = await self._refresher.refresh(self.entity)
        if result.error is not None and result.error.kind is ErrorKind.STORAGE:
            return Result.fail(ErrorKind.STORAGE, result.error.message)
        return Result.success(result.records)

    async def list_records(self, refresh: bool = True) -> List[EntityRecord]:
        listed = await self.list(refresh=refresh)
        return [to_record(self.entity, row) for row in listed.value or []]
