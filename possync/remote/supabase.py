"""Supabase implementation of the remote data service."""

import logging
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from ..config import SyncSettings
from ..types import ErrorKind, Result
from .base import Row

logger = logging.getLogger(__name__)

# PostgREST / Postgres error codes
DUPLICATE_KEY_CODE = "23505"
FOREIGN_KEY_CODE = "23503"
NOT_FOUND_CODE = "PGRST116"

_CODE_KINDS = {
    DUPLICATE_KEY_CODE: ErrorKind.DUPLICATE_KEY,
    FOREIGN_KEY_CODE: ErrorKind.CONSTRAINT,
    "23502": ErrorKind.CONSTRAINT,  # not-null violation
    "23514": ErrorKind.CONSTRAINT,  # check violation
    NOT_FOUND_CODE: ErrorKind.NOT_FOUND,
}


def classify_api_error(error: APIError) -> Result:
    """Map a PostgREST error onto the shared failure taxonomy."""
    code = str(error.code) if error.code is not None else None
    kind = _CODE_KINDS.get(code, ErrorKind.TRANSIENT)
    return Result.fail(kind, error.message or str(error), code=code)


class SupabaseRemote:
    """RemoteDataService over the async Supabase client."""

    def __init__(self, client: AsyncClient):
        self._client = client

    async def _execute(self, query) -> Result[Any]:
        try:
            response = await query.execute()
        except APIError as e:
            result = classify_api_error(e)
            logger.debug(f"Supabase error {result.failure.code}: {result.failure.message}")
            return result
        except httpx.HTTPError as e:
            return Result.fail(ErrorKind.TRANSIENT, f"{type(e).__name__}: {e}")
        return Result.success(response.data)

    async def select(
        self,
        table: str,
        *,
        record_id: Optional[str] = None,
        updated_since: Optional[str] = None,
    ) -> Result[List[Row]]:
        query = self._client.table(table).select("*")
        if record_id is not None:
            query = query.eq("id", record_id)
        if updated_since is not None:
            query = query.gte("updated_at", updated_since)
        result = await self._execute(query)
        if not result.ok:
            return result
        return Result.success(list(result.value or []))

    async def insert(self, table: str, row: Row) -> Result[Row]:
        result = await self._execute(self._client.table(table).insert(row))
        return self._first_row(result, row)

    async def update(self, table: str, record_id: str, row: Row) -> Result[Row]:
        result = await self._execute(self._client.table(table).update(row).eq("id", record_id))
        return self._first_row(result, row)

    async def upsert(self, table: str, row: Row) -> Result[Row]:
        result = await self._execute(self._client.table(table).upsert(row))
        return self._first_row(result, row)

    async def delete(self, table: str, record_id: str) -> Result[None]:
        result = await self._execute(self._client.table(table).delete().eq("id", record_id))
        if not result.ok:
            return result
        if not result.value:
            return Result.fail(ErrorKind.NOT_FOUND, f"{table}:{record_id} not found")
        return Result.success(None)

    @staticmethod
    def _first_row(result: Result[Any], fallback: Dict[str, Any]) -> Result[Row]:
        if not result.ok:
            return result
        data = result.value
        if isinstance(data, list) and data:
            return Result.success(data[0])
        return Result.success(fallback)


async def create_remote(settings: SyncSettings) -> SupabaseRemote:
    """Build a SupabaseRemote from settings."""
    if not settings.supabase_url or not settings.supabase_key:
        raise ValueError("POSSYNC_SUPABASE_URL and POSSYNC_SUPABASE_KEY must be set")
    client = await acreate_client(settings.supabase_url, settings.supabase_key)
    return SupabaseRemote(client)
