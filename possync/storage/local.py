"""Durable local store for entity records and engine metadata.

One SQLite table holds every entity collection, keyed by ``(entity, id)``,
with secondary indexes on recency (``updated_at``) and sync status.
Every method is a coroutine returning a ``Result``.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from ..entities import EntityKind, require_id, resolve_entity
from ..types import Result, strip_local_fields, utc_now
from .database import SQLiteDatabase, from_json, returns_result, to_json

logger = logging.getLogger(__name__)

EntityRef = Union[EntityKind, str]


class LocalStore:
    """Per-entity durable record collections plus a key/value metadata map."""

    def __init__(self, db: SQLiteDatabase):
        self._db = db

    # === Records ===

    @staticmethod
    def _row_to_record(row) -> Dict[str, Any]:
        record = from_json(row["data"]) or {}
        record["id"] = row["id"]
        record["synced"] = bool(row["synced"])
        record["local_updated_at"] = row["local_updated_at"]
        return record

    @returns_result
    async def get(self, entity: EntityRef, record_id: str) -> Optional[Dict[str, Any]]:
        """Point lookup by id."""
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE entity = ? AND id = ?", (kind.value, record_id)
            ).fetchone()
        return self._row_to_record(row) if row else None

    @returns_result
    async def get_all(self, entity: EntityRef) -> List[Dict[str, Any]]:
        """Full scan, most recently updated first."""
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            rows = conn.execute(
                """SELECT * FROM records WHERE entity = ?
                   ORDER BY updated_at DESC, id""",
                (kind.value,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    @returns_result
    async def get_unsynced(self, entity: EntityRef) -> List[Dict[str, Any]]:
        """Scan filtered to records not yet acknowledged remotely."""
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            rows = conn.execute(
                """SELECT * FROM records WHERE entity = ? AND synced = 0
                   ORDER BY updated_at DESC, id""",
                (kind.value,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    @returns_result
    async def put(self, entity: EntityRef, record: Dict[str, Any], synced: bool) -> Dict[str, Any]:
        """Insert or replace a record, stamping local_updated_at."""
        kind = resolve_entity(entity)
        record_id = require_id(record)
        data = strip_local_fields(record)
        now = utc_now()
        with self._db.connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO records
                   (entity, id, data, updated_at, synced, local_updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (kind.value, record_id, to_json(data), data.get("updated_at"), int(synced), now),
            )
        return {**data, "synced": synced, "local_updated_at": now}

    @returns_result
    async def mark_synced(
        self, entity: EntityRef, record_id: str, expected_updated_at: Optional[str]
    ) -> bool:
        """Flag a record synced if it still holds the version that was pushed.

        A local write that landed after the push keeps its unsynced state.
        """
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            cursor = conn.execute(
                """UPDATE records SET synced = 1
                   WHERE entity = ? AND id = ? AND updated_at IS ?""",
                (kind.value, record_id, expected_updated_at),
            )
        return cursor.rowcount > 0

    @returns_result
    async def delete(self, entity: EntityRef, record_id: str) -> bool:
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE entity = ? AND id = ?", (kind.value, record_id)
            )
        return cursor.rowcount > 0

    @returns_result
    async def clear(self, entity: EntityRef) -> int:
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            cursor = conn.execute("DELETE FROM records WHERE entity = ?", (kind.value,))
        return cursor.rowcount

    def _insert_synced(self, conn, kind: EntityKind, records: Iterable[Dict[str, Any]]) -> int:
        now = utc_now()
        rows = []
        for record in records:
            data = strip_local_fields(record)
            rows.append(
                (kind.value, require_id(data), to_json(data), data.get("updated_at"), now)
            )
        conn.executemany(
            """INSERT OR REPLACE INTO records
               (entity, id, data, updated_at, synced, local_updated_at)
               VALUES (?, ?, ?, ?, 1, ?)""",
            rows,
        )
        return len(rows)

    @returns_result
    async def bulk_put(self, entity: EntityRef, records: List[Dict[str, Any]]) -> int:
        """Store server-confirmed records, always marked synced."""
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            return self._insert_synced(conn, kind, records)

    @returns_result
    async def replace_all(
        self,
        entity: EntityRef,
        records: List[Dict[str, Any]],
        keep_ids: Iterable[str] = (),
    ) -> int:
        """Clear-and-replace a collection in one transaction.

        Rows whose id is in ``keep_ids`` are left untouched and the
        incoming records with those ids are skipped.
        """
        kind = resolve_entity(entity)
        keep = set(keep_ids)
        with self._db.connect() as conn:
            existing = conn.execute(
                "SELECT id FROM records WHERE entity = ?", (kind.value,)
            ).fetchall()
            doomed = [(kind.value, row["id"]) for row in existing if row["id"] not in keep]
            conn.executemany("DELETE FROM records WHERE entity = ? AND id = ?", doomed)
            return self._insert_synced(
                conn, kind, (r for r in records if r.get("id") not in keep)
            )

    @returns_result
    async def count(self, entity: EntityRef, synced: Optional[bool] = None) -> int:
        kind = resolve_entity(entity)
        with self._db.connect() as conn:
            if synced is None:
                row = conn.execute(
                    "SELECT COUNT(*) FROM records WHERE entity = ?", (kind.value,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM records WHERE entity = ? AND synced = ?",
                    (kind.value, int(synced)),
                ).fetchone()
        return row[0]

    # === Metadata ===

    @returns_result
    async def get_meta(self, key: str, default: Any = None) -> Any:
        with self._db.connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        value = from_json(row["value"])
        return default if value is None else value

    @returns_result
    async def set_meta(self, key: str, value: Any) -> None:
        with self._db.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, to_json(value), utc_now()),
            )

    @returns_result
    async def delete_meta(self, key: str) -> bool:
        with self._db.connect() as conn:
            cursor = conn.execute("DELETE FROM sync_meta WHERE key = ?", (key,))
        return cursor.rowcount > 0
