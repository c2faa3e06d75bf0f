"""Remote data service protocol.

The engine talks to the remote through this narrow tabular interface.
Implementations return ``Result`` values and classify failures into
``ErrorKind`` so the orchestrator can tell not-found, duplicate-key and
constraint violations apart from transient errors.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable

from ..types import ErrorKind, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

Row = Dict[str, Any]


@runtime_checkable
class RemoteDataService(Protocol):
    """Generic remote tabular store."""

    async def select(
        self,
        table: str,
        *,
        record_id: Optional[str] = None,
        updated_since: Optional[str] = None,
    ) -> Result[List[Row]]:
        """Rows of a table, optionally filtered by id or by ``updated_at >= X``."""
        ...

    async def insert(self, table: str, row: Row) -> Result[Row]: ...

    async def update(self, table: str, record_id: str, row: Row) -> Result[Row]: ...

    async def upsert(self, table: str, row: Row) -> Result[Row]: ...

    async def delete(self, table: str, record_id: str) -> Result[None]:
        """Delete by id. Reports NOT_FOUND when no row matched."""
        ...


async def call_remote(awaitable: Awaitable[Result[T]], timeout: Optional[float]) -> Result[T]:
    """Await a remote call with an upper bound on its duration.

    Timeouts and unexpected exceptions from the network stack are turned
    into failed Results.
    """
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        return Result.fail(ErrorKind.TIMEOUT, f"Remote call timed out after {timeout}s")
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"Remote call raised {type(e).__name__}: {e}", exc_info=True)
        return Result.fail(ErrorKind.TRANSIENT, str(e))
