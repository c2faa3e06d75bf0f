"""Durable sync queue, failure log and conflict history.

The queue holds at most one pending intent per record. A new intent for a
record that is already queued is coalesced into the existing entry, which
keeps its FIFO position and gets a new ``revision``. Removal and retry
bookkeeping are conditional on the revision, so a drain that applied an
older intent never discards a newer one.
"""

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from ..entities import EntityKind, require_id, resolve_entity
from ..types import OperationKind, Result, SyncConflict, SyncFailure, SyncOperation, utc_now
from .database import SQLiteDatabase, from_json, returns_result, to_json

logger = logging.getLogger(__name__)

EntityRef = Union[EntityKind, str]


def coalesce(pending: OperationKind, incoming: OperationKind) -> OperationKind:
    """Operation kind that replaces a pending intent when a new one arrives."""
    if incoming is OperationKind.DELETE:
        return OperationKind.DELETE
    if pending is OperationKind.CREATE:
        return OperationKind.CREATE
    if pending is OperationKind.DELETE and incoming is OperationKind.CREATE:
        # Recreating a deleted record must insert if the delete already landed.
        return OperationKind.CREATE
    return OperationKind.UPDATE


class SyncQueue:
    """FIFO backlog of write intents not yet acknowledged by the remote."""

    def __init__(self, db: SQLiteDatabase):
        self._db = db

    @staticmethod
    def _row_to_operation(row) -> SyncOperation:
        return SyncOperation(
            id=row["id"],
            entity=EntityKind(row["entity"]),
            kind=OperationKind(row["operation"]),
            payload=from_json(row["payload"]) or {"id": row["record_id"]},
            enqueued_at=row["enqueued_at"],
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
            revision=row["revision"],
        )

    def _enqueue(
        self, conn, entity: EntityKind, kind: OperationKind, payload: Dict[str, Any]
    ) -> SyncOperation:
        record_id = require_id(payload)
        existing = conn.execute(
            "SELECT * FROM sync_queue WHERE entity = ? AND record_id = ?",
            (entity.value, record_id),
        ).fetchone()

        if existing is None:
            op = SyncOperation(
                id=str(uuid.uuid4()),
                entity=entity,
                kind=kind,
                payload=payload,
                enqueued_at=utc_now(),
            )
            conn.execute(
                """INSERT INTO sync_queue
                   (id, entity, record_id, operation, payload, enqueued_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (op.id, entity.value, record_id, kind.value, to_json(payload), op.enqueued_at),
            )
            logger.debug(f"Queued {kind.value} {entity.value}:{record_id}")
            return op

        pending = self._row_to_operation(existing)
        merged = coalesce(pending.kind, kind)
        conn.execute(
            """UPDATE sync_queue
               SET operation = ?, payload = ?, retry_count = 0,
                   last_error = NULL, last_attempt_at = NULL,
                   revision = revision + 1
               WHERE id = ?""",
            (merged.value, to_json(payload), pending.id),
        )
        logger.debug(
            f"Coalesced {kind.value} into pending {pending.kind.value} "
            f"{entity.value}:{record_id} -> {merged.value}"
        )
        return SyncOperation(
            id=pending.id,
            entity=entity,
            kind=merged,
            payload=payload,
            enqueued_at=pending.enqueued_at,
            revision=pending.revision + 1,
        )

    # === Queue Operations ===

    @returns_result
    async def enqueue(
        self, entity: EntityRef, kind: Union[OperationKind, str], payload: Dict[str, Any]
    ) -> SyncOperation:
        """Queue a write intent, coalescing with any pending intent for the record."""
        with self._db.connect() as conn:
            return self._enqueue(conn, resolve_entity(entity), OperationKind(kind), payload)

    @returns_result
    async def list(self, limit: Optional[int] = None) -> List[SyncOperation]:
        """Pending operations in enqueue order."""
        sql = "SELECT * FROM sync_queue ORDER BY enqueued_at, seq"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_operation(row) for row in rows]

    @returns_result
    async def get(self, entity: EntityRef, record_id: str) -> Optional[SyncOperation]:
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE entity = ? AND record_id = ?",
                (kind.value, record_id),
            ).fetchone()
        return self._row_to_operation(row) if row else None

    @returns_result
    async def remove(self, op: SyncOperation) -> bool:
        """Remove an applied operation unless a newer intent replaced it."""
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE id = ? AND revision = ?", (op.id, op.revision)
            )
        return cursor.rowcount > 0

    @returns_result
    async def update(self, op: SyncOperation) -> bool:
        """Persist retry bookkeeping for an operation."""
        with self._db.connect() as conn:
            cursor = conn.execute(
                """UPDATE sync_queue
                   SET retry_count = ?, last_error = ?, last_attempt_at = ?
                   WHERE id = ? AND revision = ?""",
                (
                    op.retry_count,
                    (op.last_error or "")[:500] or None,
                    op.last_attempt_at,
                    op.id,
                    op.revision,
                ),
            )
        return cursor.rowcount > 0

    @returns_result
    async def count(self) -> int:
        with self._db.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]

    @returns_result
    async def pending_ids(
        self, entity: EntityRef, kind: Optional[OperationKind] = None
    ) -> Set[str]:
        """Record ids with a pending intent, optionally of one kind."""
        entity_kind = resolve_entity(entity)
        with self._db.connect() as conn:
            if kind is None:
                rows = conn.execute(
                    "SELECT record_id FROM sync_queue WHERE entity = ?", (entity_kind.value,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT record_id FROM sync_queue WHERE entity = ? AND operation = ?",
                    (entity_kind.value, OperationKind(kind).value),
                ).fetchall()
        return {row["record_id"] for row in rows}

    async def pending_delete_ids(self, entity: EntityRef) -> Result[Set[str]]:
        """Tombstones: ids whose deletion has not reached the remote yet."""
        return await self.pending_ids(entity, OperationKind.DELETE)

    @returns_result
    async def has_pending(self, entity: EntityRef, record_id: str) -> bool:
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM sync_queue WHERE entity = ? AND record_id = ?",
                (kind.value, record_id),
            ).fetchone()
        return row is not None

    @returns_result
    async def status(self) -> Dict[str, Any]:
        """Queue status with counts."""
        with self._db.connect() as conn:
            pending = conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]
            failures = conn.execute("SELECT COUNT(*) FROM sync_failures").fetchone()[0]
            entity_rows = conn.execute(
                "SELECT entity, COUNT(*) AS count FROM sync_queue GROUP BY entity"
            ).fetchall()
            op_rows = conn.execute(
                "SELECT operation, COUNT(*) AS count FROM sync_queue GROUP BY operation"
            ).fetchall()
        return {
            "pending": pending,
            "failures": failures,
            "by_entity": {row["entity"]: row["count"] for row in entity_rows},
            "by_operation": {row["operation"]: row["count"] for row in op_rows},
        }

    # === Failure log ===

    @staticmethod
    def _row_to_failure(row) -> SyncFailure:
        return SyncFailure(
            id=row["id"],
            operation_id=row["operation_id"],
            entity=row["entity"],
            record_id=row["record_id"],
            kind=OperationKind(row["operation"]),
            payload=from_json(row["payload"]) or {"id": row["record_id"]},
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            failed_at=row["failed_at"],
        )

    @returns_result
    async def evict(self, op: SyncOperation) -> Optional[SyncFailure]:
        """Move an exhausted operation from the queue into the failure log.

        Returns None when a newer intent has replaced the operation, in
        which case nothing is evicted.
        """
        failure = SyncFailure(
            id=str(uuid.uuid4()),
            operation_id=op.id,
            entity=op.entity.value,
            record_id=op.record_id,
            kind=op.kind,
            payload=op.payload,
            retry_count=op.retry_count,
            last_error=op.last_error,
            failed_at=utc_now(),
        )
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE id = ? AND revision = ?", (op.id, op.revision)
            )
            if cursor.rowcount == 0:
                return None
            conn.execute(
                """INSERT INTO sync_failures
                   (id, operation_id, entity, record_id, operation, payload,
                    retry_count, last_error, failed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    failure.id,
                    failure.operation_id,
                    failure.entity,
                    failure.record_id,
                    failure.kind.value,
                    to_json(failure.payload),
                    failure.retry_count,
                    failure.last_error,
                    failure.failed_at,
                ),
            )
        return failure

    @returns_result
    async def list_failures(self, limit: int = 100) -> List[SyncFailure]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_failures ORDER BY failed_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_failure(row) for row in rows]

    @returns_result
    async def requeue_failures(self, failure_ids: Optional[Iterable[str]] = None) -> int:
        """Re-enqueue evicted operations for another round of retries.

        Args:
            failure_ids: Specific failure IDs to requeue, or None for all.
        Returns:
            Number of operations requeued.
        """
        with self._db.connect() as conn:
            if failure_ids is None:
                rows = conn.execute("SELECT * FROM sync_failures ORDER BY failed_at").fetchall()
            else:
                ids = list(failure_ids)
                if not ids:
                    return 0
                placeholders = ",".join("?" for _ in ids)
                rows = conn.execute(
                    f"SELECT * FROM sync_failures WHERE id IN ({placeholders}) ORDER BY failed_at",
                    ids,
                ).fetchall()

            for row in rows:
                failure = self._row_to_failure(row)
                self._enqueue(conn, EntityKind(failure.entity), failure.kind, failure.payload)
                conn.execute("DELETE FROM sync_failures WHERE id = ?", (failure.id,))
        return len(rows)

    # === Conflict history ===

    @returns_result
    async def record_conflict(self, conflict: SyncConflict) -> str:
        with self._db.connect() as conn:
            conn.execute(
                """INSERT INTO sync_conflicts
                   (id, entity, record_id, local_version, remote_version, resolution, resolved_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict.id,
                    conflict.entity,
                    conflict.record_id,
                    to_json(conflict.local_version),
                    to_json(conflict.remote_version),
                    conflict.resolution,
                    conflict.resolved_at,
                ),
            )
        return conflict.id

    @returns_result
    async def list_conflicts(self, limit: int = 100) -> List[SyncConflict]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_conflicts ORDER BY resolved_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            SyncConflict(
                id=row["id"],
                entity=row["entity"],
                record_id=row["record_id"],
                local_version=from_json(row["local_version"]) or {},
                remote_version=from_json(row["remote_version"]) or {},
                resolution=row["resolution"],
                resolved_at=row["resolved_at"],
            )
            for row in rows
        ]

    @returns_result
    async def clear_conflicts(self, before: Optional[str] = None) -> int:
        """Clear conflict history, optionally only entries resolved before a timestamp."""
        with self._db.connect() as conn:
            if before:
                cursor = conn.execute("DELETE FROM sync_conflicts WHERE resolved_at < ?", (before,))
            else:
                cursor = conn.execute("DELETE FROM sync_conflicts")
        return cursor.rowcount
