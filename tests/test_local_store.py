"""Tests for the durable local store.

Tests:
- put/get round trip with local bookkeeping fields
- recency ordering and unsynced scans
- mark_synced compare-and-set
- clear-and-replace with kept ids
- metadata
- storage failures surface as STORAGE results
"""

import sqlite3

import pytest

from possync.entities import EntityKind
from possync.storage import LocalStore, SQLiteDatabase
from possync.types import ErrorKind, RecordValidationError, UnknownEntityError

CUSTOMERS = EntityKind.CUSTOMER


def customer(record_id, name="Ana", updated_at="2024-03-01T12:00:00+00:00", **extra):
    return {"id": record_id, "name": name, "updated_at": updated_at, **extra}


class TestRecords:
    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        stored = await store.put(CUSTOMERS, customer("c1"), synced=False)
        assert stored.ok
        assert stored.value["synced"] is False
        assert stored.value["local_updated_at"]

        found = await store.get(CUSTOMERS, "c1")
        assert found.ok
        assert found.value["name"] == "Ana"
        assert found.value["synced"] is False

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        found = await store.get(CUSTOMERS, "nope")
        assert found.ok
        assert found.value is None

    @pytest.mark.asyncio
    async def test_entity_by_name(self, store):
        await store.put("customers", customer("c1"), synced=True)
        found = await store.get(CUSTOMERS, "c1")
        assert found.value["synced"] is True

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, store):
        await store.put(CUSTOMERS, customer("x"), synced=True)
        found = await store.get(EntityKind.PRODUCT, "x")
        assert found.value is None

    @pytest.mark.asyncio
    async def test_local_fields_are_not_persisted_from_input(self, store):
        await store.put(CUSTOMERS, customer("c1", synced=True), synced=False)
        found = await store.get(CUSTOMERS, "c1")
        assert found.value["synced"] is False

    @pytest.mark.asyncio
    async def test_get_all_newest_first(self, store):
        await store.put(CUSTOMERS, customer("old", updated_at="2024-01-01T00:00:00+00:00"), True)
        await store.put(CUSTOMERS, customer("new", updated_at="2024-06-01T00:00:00+00:00"), True)
        await store.put(CUSTOMERS, customer("mid", updated_at="2024-03-01T00:00:00+00:00"), True)

        records = await store.get_all(CUSTOMERS)
        assert [r["id"] for r in records.value] == ["new", "mid", "old"]

    @pytest.mark.asyncio
    async def test_get_unsynced(self, store):
        await store.put(CUSTOMERS, customer("a"), synced=True)
        await store.put(CUSTOMERS, customer("b"), synced=False)

        unsynced = await store.get_unsynced(CUSTOMERS)
        assert [r["id"] for r in unsynced.value] == ["b"]
        assert (await store.count(CUSTOMERS)).value == 2
        assert (await store.count(CUSTOMERS, synced=False)).value == 1

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, store):
        await store.put(CUSTOMERS, customer("a"), synced=True)
        await store.put(CUSTOMERS, customer("b"), synced=True)

        assert (await store.delete(CUSTOMERS, "a")).value is True
        assert (await store.delete(CUSTOMERS, "a")).value is False
        assert (await store.clear(CUSTOMERS)).value == 1
        assert (await store.count(CUSTOMERS)).value == 0

    @pytest.mark.asyncio
    async def test_put_without_id_raises(self, store):
        with pytest.raises(RecordValidationError):
            await store.put(CUSTOMERS, {"name": "no id"}, synced=False)

    @pytest.mark.asyncio
    async def test_unknown_entity_raises(self, store):
        with pytest.raises(UnknownEntityError):
            await store.get("invoices", "x")


class TestMarkSynced:
    @pytest.mark.asyncio
    async def test_marks_matching_version(self, store):
        await store.put(CUSTOMERS, customer("c1", updated_at="t1"), synced=False)

        marked = await store.mark_synced(CUSTOMERS, "c1", "t1")
        assert marked.value is True
        assert (await store.get(CUSTOMERS, "c1")).value["synced"] is True

    @pytest.mark.asyncio
    async def test_newer_local_write_stays_unsynced(self, store):
        await store.put(CUSTOMERS, customer("c1", updated_at="t1"), synced=False)
        await store.put(CUSTOMERS, customer("c1", name="Bia", updated_at="t2"), synced=False)

        marked = await store.mark_synced(CUSTOMERS, "c1", "t1")
        assert marked.value is False
        assert (await store.get(CUSTOMERS, "c1")).value["synced"] is False


class TestBulk:
    @pytest.mark.asyncio
    async def test_bulk_put_marks_synced(self, store):
        count = await store.bulk_put(CUSTOMERS, [customer("a"), customer("b")])
        assert count.value == 2
        assert (await store.count(CUSTOMERS, synced=True)).value == 2

    @pytest.mark.asyncio
    async def test_replace_all_drops_missing_rows(self, store):
        await store.bulk_put(CUSTOMERS, [customer("a"), customer("b")])

        await store.replace_all(CUSTOMERS, [customer("a", name="Ana 2"), customer("c")])

        records = {r["id"]: r for r in (await store.get_all(CUSTOMERS)).value}
        assert set(records) == {"a", "c"}
        assert records["a"]["name"] == "Ana 2"

    @pytest.mark.asyncio
    async def test_replace_all_keeps_pending_rows(self, store):
        await store.put(CUSTOMERS, customer("local", name="Mine"), synced=False)
        await store.bulk_put(CUSTOMERS, [customer("gone")])

        await store.replace_all(
            CUSTOMERS, [customer("local", name="Theirs"), customer("new")], keep_ids={"local"}
        )

        records = {r["id"]: r for r in (await store.get_all(CUSTOMERS)).value}
        assert set(records) == {"local", "new"}
        assert records["local"]["name"] == "Mine"
        assert records["local"]["synced"] is False


class TestMeta:
    @pytest.mark.asyncio
    async def test_meta_round_trip(self, store):
        assert (await store.get_meta("last_sync:customers")).value is None
        assert (await store.get_meta("counter", 0)).value == 0

        await store.set_meta("counter", 3)
        await store.set_meta("info", {"a": [1, 2]})
        assert (await store.get_meta("counter")).value == 3
        assert (await store.get_meta("info")).value == {"a": [1, 2]}

        assert (await store.delete_meta("counter")).value is True
        assert (await store.get_meta("counter", 0)).value == 0


class TestStorageFailure:
    @pytest.mark.asyncio
    async def test_unavailable_database_returns_storage_failure(self, temp_db, monkeypatch):
        db = SQLiteDatabase(temp_db)
        store = LocalStore(db)

        def broken():
            raise sqlite3.OperationalError("unable to open database file")

        monkeypatch.setattr(db, "_get_conn", broken)

        result = await store.get_all(CUSTOMERS)
        assert not result.ok
        assert result.is_error(ErrorKind.STORAGE)
        assert "unable to open" in result.failure.message

    def test_database_file_created(self, temp_db):
        SQLiteDatabase(temp_db)
        assert temp_db.exists()
