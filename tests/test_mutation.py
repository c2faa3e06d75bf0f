"""Tests for the mutation lock and debounced writer."""

import pytest

from possync.mutation import DebouncedWriter, MutationLock


class TestMutationLock:
    def test_unlocked_initially(self, lock):
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_window_expires(self, lock, scheduler):
        lock.acquire()
        assert lock.locked

        await scheduler.advance(1.9)
        assert lock.locked

        await scheduler.advance(0.2)
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_acquire_extends_window(self, lock, scheduler):
        lock.acquire()
        await scheduler.advance(1.5)
        lock.acquire()
        await scheduler.advance(1.5)
        assert lock.locked

    def test_release(self, lock):
        lock.acquire()
        lock.release()
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_guard_skips_while_locked(self, lock, scheduler):
        calls = []
        guarded = lock.guard(lambda entity: calls.append(entity) or "refreshed")

        lock.acquire()
        assert guarded("customers") is None
        assert lock.skipped == 1

        await scheduler.advance(2.5)
        assert guarded("customers") == "refreshed"
        assert calls == ["customers"]


class TestDebouncedWriter:
    @pytest.mark.asyncio
    async def test_bursts_collapse_into_one_write(self, scheduler):
        writes = []

        async def write(key, fields):
            writes.append((key, fields))

        writer = DebouncedWriter(write, quiet_period=2.0, scheduler=scheduler)
        writer.submit("/agenda", {"visits": 1})
        await scheduler.advance(1.0)
        writer.submit("/agenda", {"last_seen": "t1"})
        await scheduler.advance(1.5)
        assert writes == []

        await scheduler.advance(0.6)
        assert writes == [("/agenda", {"visits": 1, "last_seen": "t1"})]
        assert writer.pending == {}

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, scheduler):
        writes = []
        writer = DebouncedWriter(lambda key, fields: writes.append(key), 2.0, scheduler)

        writer.submit("a", {"x": 1})
        await scheduler.advance(1.0)
        writer.submit("b", {"x": 2})
        await scheduler.advance(1.0)
        assert writes == ["a"]

        await scheduler.advance(1.0)
        assert writes == ["a", "b"]

    @pytest.mark.asyncio
    async def test_flush_and_cancel(self, scheduler):
        writes = []
        writer = DebouncedWriter(lambda key, fields: writes.append((key, fields)), 2.0, scheduler)

        writer.submit("a", {"x": 1})
        writer.submit("b", {"y": 2})
        await writer.flush("a")
        assert writes == [("a", {"x": 1})]
        assert writer.pending == {"b": {"y": 2}}

        writer.cancel()
        await scheduler.advance(5.0)
        assert writes == [("a", {"x": 1})]
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_write_failure_is_logged(self, scheduler, caplog):
        def write(key, fields):
            raise ConnectionError("offline")

        writer = DebouncedWriter(write, 2.0, scheduler)
        writer.submit("a", {"x": 1})
        await scheduler.advance(2.0)

        assert "Debounced write for 'a' failed" in caplog.text
        assert writer.pending == {}
