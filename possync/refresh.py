"""Entity read/refresh strategy.

Online reads pull the authoritative snapshot for an entity kind and replace
the local collection with it, so records deleted remotely disappear
locally. Records with pending local intents keep their local version, and
ids with a pending delete are hidden from every read. Offline reads and
remote failures are served from the local store.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from .config import EmptySnapshotPolicy
from .conflict import resolve
from .connectivity import ConnectivityMonitor
from .entities import EntityKind, get_spec, resolve_entity
from .remote.base import RemoteDataService, call_remote
from .storage import LocalStore, SyncQueue
from .types import Failure, Result, utc_now

logger = logging.getLogger(__name__)

SOURCE_REMOTE = "remote"
SOURCE_LOCAL = "local"


def last_sync_key(entity: EntityKind) -> str:
    return f"last_sync:{entity.value}"


def empty_snapshots_key(entity: EntityKind) -> str:
    return f"empty_snapshots:{entity.value}"


@dataclass
class RefreshResult:
    """The view returned by a refresh and how it was obtained."""

    entity: EntityKind
    records: List[Dict[str, Any]] = field(default_factory=list)
    source: str = SOURCE_LOCAL
    cleared: bool = False  # local collection was replaced by the snapshot
    merged: int = 0  # records written by an incremental refresh
    held_back: bool = False  # empty snapshot not applied
    error: Optional[Failure] = None


class EntityRefresher:
    """Reconciles remote snapshots into the local store."""

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        remote: RemoteDataService,
        connectivity: ConnectivityMonitor,
        *,
        policy: EmptySnapshotPolicy = EmptySnapshotPolicy.CONFIRM_TWICE,
        remote_timeout: Optional[float] = 15.0,
    ):
        self._store = store
        self._queue = queue
        self._remote = remote
        self._connectivity = connectivity
        self.policy = policy
        self._remote_timeout = remote_timeout

    async def read_local(self, entity: Union[EntityKind, str]) -> Result[List[Dict[str, Any]]]:
        """Local records of a kind, newest first, without pending deletes."""
        kind = resolve_entity(entity)
        records = await self._store.get_all(kind)
        if not records.ok:
            return records
        tombstones = await self._queue.pending_delete_ids(kind)
        hidden: Set[str] = tombstones.value if tombstones.ok else set()
        return Result.success([r for r in records.value if r["id"] not in hidden])

    async def refresh(
        self, entity: Union[EntityKind, str], incremental: bool = False
    ) -> RefreshResult:
        kind = resolve_entity(entity)
        if not self._connectivity.online:
            return await self._local_result(kind)
        if incremental:
            since = await self._store.get_meta(last_sync_key(kind))
            if since.ok and since.value:
                return await self._refresh_incremental(kind, since.value)
        return await self._refresh_full(kind)

    async def refresh_all(self, incremental: bool = False) -> Dict[EntityKind, RefreshResult]:
        """Refresh every entity kind, e.g. for the initial sync after start."""
        results = {}
        for kind in EntityKind:
            results[kind] = await self.refresh(kind, incremental=incremental)
        return results

    async def _local_result(
        self, kind: EntityKind, error: Optional[Failure] = None, held_back: bool = False
    ) -> RefreshResult:
        local = await self.read_local(kind)
        return RefreshResult(
            entity=kind,
            records=local.value if local.ok else [],
            source=SOURCE_LOCAL,
            held_back=held_back,
            error=error if local.ok else (error or local.failure),
        )

    async def _fetch(self, kind: EntityKind, since: Optional[str] = None) -> Result:
        table = get_spec(kind).table
        return await call_remote(
            self._remote.select(table, updated_since=since), self._remote_timeout
        )

    async def _refresh_full(self, kind: EntityKind) -> RefreshResult:
        started_at = utc_now()
        fetched = await self._fetch(kind)
        if not fetched.ok:
            logger.warning(
                f"Failed to fetch {kind.value} from remote, using local data: "
                f"{fetched.failure.message}"
            )
            return await self._local_result(kind, error=fetched.failure)

        pending = await self._queue.pending_ids(kind)
        unsynced = await self._store.get_unsynced(kind)
        if not pending.ok or not unsynced.ok:
            failure = pending.failure or unsynced.failure
            logger.warning(f"Cannot reconcile {kind.value}, local store unavailable")
            return RefreshResult(entity=kind, source=SOURCE_LOCAL, error=failure)
        keep = pending.value | {r["id"] for r in unsynced.value}

        rows = fetched.value
        if not rows:
            if await self._hold_back_empty(kind):
                return await self._local_result(kind, held_back=True)
        else:
            await self._store.delete_meta(empty_snapshots_key(kind))

        replaced = await self._store.replace_all(kind, rows, keep_ids=keep)
        if not replaced.ok:
            return await self._local_result(kind, error=replaced.failure)
        await self._store.set_meta(last_sync_key(kind), started_at)
        logger.debug(f"Replaced {kind.value} with {replaced.value} remote records")

        view = await self.read_local(kind)
        return RefreshResult(
            entity=kind,
            records=view.value if view.ok else [],
            source=SOURCE_REMOTE,
            cleared=True,
            error=view.failure,
        )

    async def _hold_back_empty(self, kind: EntityKind) -> bool:
        """Decide whether an empty snapshot should leave local records in place."""
        synced = await self._store.count(kind, synced=True)
        if not synced.ok or synced.value == 0:
            return False
        if self.policy is EmptySnapshotPolicy.TRUST:
            return False
        if self.policy is EmptySnapshotPolicy.NEVER:
            logger.warning(f"Remote returned no {kind.value}, keeping {synced.value} local records")
            return True

        key = empty_snapshots_key(kind)
        seen = await self._store.get_meta(key, 0)
        count = (seen.value if seen.ok else 0) + 1
        if count < 2:
            await self._store.set_meta(key, count)
            logger.warning(
                f"Remote returned no {kind.value}, keeping {synced.value} local records "
                f"until confirmed by the next refresh"
            )
            return True
        await self._store.delete_meta(key)
        return False

    async def _refresh_incremental(self, kind: EntityKind, since: str) -> RefreshResult:
        started_at = utc_now()
        fetched = await self._fetch(kind, since=since)
        if not fetched.ok:
            logger.warning(
                f"Failed to fetch {kind.value} changes, using local data: "
                f"{fetched.failure.message}"
            )
            return await self._local_result(kind, error=fetched.failure)

        pending = await self._queue.pending_ids(kind)
        if not pending.ok:
            return await self._local_result(kind, error=pending.failure)

        merged = 0
        for row in fetched.value:
            record_id = row.get("id")
            if not record_id or record_id in pending.value:
                continue
            local = await self._store.get(kind, record_id)
            if not local.ok:
                return await self._local_result(kind, error=local.failure)
            if local.value is None or resolve(local.value, row).remote_wins:
                stored = await self._store.put(kind, row, synced=True)
                if stored.ok:
                    merged += 1

        await self._store.set_meta(last_sync_key(kind), started_at)
        logger.debug(f"Merged {merged} changed {kind.value} since {since}")
        view = await self.read_local(kind)
        return RefreshResult(
            entity=kind,
            records=view.value if view.ok else [],
            source=SOURCE_REMOTE,
            merged=merged,
            error=view.failure,
        )
