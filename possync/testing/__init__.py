"""Test doubles for possync.

``FakeRemote`` is an in-memory ``RemoteDataService`` with fault injection.
``ManualScheduler`` is a virtual-clock ``Scheduler``: timers only fire when
the test calls ``advance()``.
"""

import asyncio
import heapq
import inspect
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..remote.base import Row
from ..types import EPOCH, ErrorKind, Result, parse_datetime

# === Scheduler ===


@dataclass(order=True)
class ManualTimer:
    when: float
    seq: int
    callback: Callable[[], Any] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when told to."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: List[ManualTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], Any]) -> ManualTimer:
        timer = ManualTimer(self._now + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._timers, timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running due timers in order."""
        target = self._now + seconds
        while self._timers and self._timers[0].when <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = timer.when
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
        self._now = target


# === Remote ===


@dataclass
class _Fault:
    kind: ErrorKind
    message: str
    operation: Optional[str] = None
    table: Optional[str] = None
    record_id: Optional[str] = None
    remaining: Optional[int] = 1  # None = every matching call
    code: Optional[str] = None

    def matches(self, operation: str, table: str, record_id: Optional[str]) -> bool:
        return (
            (self.operation is None or self.operation == operation)
            and (self.table is None or self.table == table)
            and (self.record_id is None or self.record_id == record_id)
        )


class FakeRemote:
    """In-memory remote tables keyed by id."""

    def __init__(self, latency: float = 0.0):
        self.tables: Dict[str, Dict[str, Row]] = defaultdict(dict)
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.latency = latency
        self._faults: List[_Fault] = []
        self._restricted: Set[Tuple[str, str]] = set()

    # --- setup ---

    def seed(self, table: str, rows: List[Row]) -> None:
        for row in rows:
            self.tables[table][row["id"]] = dict(row)

    def rows(self, table: str) -> List[Row]:
        return [dict(row) for row in self.tables[table].values()]

    def get(self, table: str, record_id: str) -> Optional[Row]:
        row = self.tables[table].get(record_id)
        return dict(row) if row is not None else None

    def fail_next(
        self,
        operation: Optional[str] = None,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        message: str = "network unreachable",
        *,
        table: Optional[str] = None,
        record_id: Optional[str] = None,
        times: int = 1,
    ) -> None:
        self._faults.append(_Fault(kind, message, operation, table, record_id, times))

    def fail_always(
        self,
        operation: Optional[str] = None,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        message: str = "network unreachable",
        *,
        table: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> None:
        self._faults.append(_Fault(kind, message, operation, table, record_id, None))

    def restrict_delete(self, table: str, record_id: str) -> None:
        """Make deletes of a row fail with a foreign-key violation."""
        self._restricted.add((table, record_id))

    def clear_faults(self) -> None:
        self._faults.clear()

    def call_count(self, operation: str, table: Optional[str] = None) -> int:
        return sum(
            1 for op, t, _ in self.calls if op == operation and (table is None or t == table)
        )

    # --- RemoteDataService ---

    async def _enter(self, operation: str, table: str, record_id: Optional[str]) -> Optional[Result]:
        self.calls.append((operation, table, record_id))
        if self.latency:
            await asyncio.sleep(self.latency)
        for fault in self._faults:
            if fault.matches(operation, table, record_id):
                if fault.remaining is not None:
                    fault.remaining -= 1
                    if fault.remaining <= 0:
                        self._faults.remove(fault)
                return Result.fail(fault.kind, fault.message, code=fault.code)
        return None

    async def select(
        self,
        table: str,
        *,
        record_id: Optional[str] = None,
        updated_since: Optional[str] = None,
    ) -> Result[List[Row]]:
        fault = await self._enter("select", table, record_id)
        if fault is not None:
            return fault
        rows = list(self.tables[table].values())
        if record_id is not None:
            rows = [r for r in rows if r.get("id") == record_id]
        if updated_since is not None:
            since = parse_datetime(updated_since) or EPOCH
            rows = [r for r in rows if (parse_datetime(r.get("updated_at")) or EPOCH) >= since]
        return Result.success([dict(r) for r in rows])

    async def insert(self, table: str, row: Row) -> Result[Row]:
        fault = await self._enter("insert", table, row.get("id"))
        if fault is not None:
            return fault
        if row["id"] in self.tables[table]:
            return Result.fail(
                ErrorKind.DUPLICATE_KEY, "duplicate key value violates unique constraint", "23505"
            )
        self.tables[table][row["id"]] = dict(row)
        return Result.success(dict(row))

    async def update(self, table: str, record_id: str, row: Row) -> Result[Row]:
        fault = await self._enter("update", table, record_id)
        if fault is not None:
            return fault
        existing = self.tables[table].get(record_id)
        if existing is None:
            return Result.success(dict(row))
        existing.update(row)
        return Result.success(dict(existing))

    async def upsert(self, table: str, row: Row) -> Result[Row]:
        fault = await self._enter("upsert", table, row.get("id"))
        if fault is not None:
            return fault
        merged = {**self.tables[table].get(row["id"], {}), **row}
        self.tables[table][row["id"]] = merged
        return Result.success(dict(merged))

    async def delete(self, table: str, record_id: str) -> Result[None]:
        fault = await self._enter("delete", table, record_id)
        if fault is not None:
            return fault
        if (table, record_id) in self._restricted:
            return Result.fail(
                ErrorKind.CONSTRAINT,
                f"update or delete on table \"{table}\" violates foreign key constraint",
                "23503",
            )
        if self.tables[table].pop(record_id, None) is None:
            return Result.fail(ErrorKind.NOT_FOUND, f"{table}:{record_id} not found")
        return Result.success(None)
