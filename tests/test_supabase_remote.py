"""Tests for the Supabase remote adapter using a mocked async client."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from possync.config import SyncSettings
from possync.remote import RemoteDataService
from possync.remote.supabase import SupabaseRemote, classify_api_error, create_remote
from possync.types import ErrorKind


def api_error(code, message="error"):
    return APIError({"message": message, "code": code, "hint": None, "details": None})


@pytest.fixture
def mock_client():
    """Supabase client whose query builder chains back to itself."""
    builder = MagicMock()
    for name in ("select", "insert", "update", "upsert", "delete", "eq", "gte"):
        getattr(builder, name).return_value = builder
    builder.execute = AsyncMock(return_value=MagicMock(data=[]))

    client = MagicMock()
    client.table.return_value = builder
    return client, builder


class TestClassification:
    @pytest.mark.parametrize(
        "code,kind",
        [
            ("23505", ErrorKind.DUPLICATE_KEY),
            ("23503", ErrorKind.CONSTRAINT),
            ("PGRST116", ErrorKind.NOT_FOUND),
            ("42P01", ErrorKind.TRANSIENT),
            (None, ErrorKind.TRANSIENT),
        ],
    )
    def test_codes(self, code, kind):
        result = classify_api_error(api_error(code, "boom"))
        assert result.failure.kind is kind
        assert result.failure.message == "boom"


class TestSupabaseRemote:
    def test_implements_protocol(self, mock_client):
        client, _ = mock_client
        assert isinstance(SupabaseRemote(client), RemoteDataService)

    @pytest.mark.asyncio
    async def test_select_filters(self, mock_client):
        client, builder = mock_client
        builder.execute.return_value = MagicMock(data=[{"id": "a"}])
        remote = SupabaseRemote(client)

        result = await remote.select("customers", record_id="a", updated_since="2024-01-01")

        assert result.value == [{"id": "a"}]
        client.table.assert_called_with("customers")
        builder.select.assert_called_with("*")
        builder.eq.assert_called_with("id", "a")
        builder.gte.assert_called_with("updated_at", "2024-01-01")

    @pytest.mark.asyncio
    async def test_select_all(self, mock_client):
        client, builder = mock_client
        builder.execute.return_value = MagicMock(data=None)

        result = await SupabaseRemote(client).select("services")

        assert result.value == []
        builder.eq.assert_not_called()
        builder.gte.assert_not_called()

    @pytest.mark.asyncio
    async def test_insert_returns_stored_row(self, mock_client):
        client, builder = mock_client
        builder.execute.return_value = MagicMock(data=[{"id": "a", "name": "Ana", "seq": 1}])

        result = await SupabaseRemote(client).insert("customers", {"id": "a", "name": "Ana"})

        builder.insert.assert_called_with({"id": "a", "name": "Ana"})
        assert result.value["seq"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_key(self, mock_client):
        client, builder = mock_client
        builder.execute.side_effect = api_error("23505", "duplicate key value")

        result = await SupabaseRemote(client).insert("customers", {"id": "a"})

        assert result.is_error(ErrorKind.DUPLICATE_KEY)
        assert result.failure.code == "23505"

    @pytest.mark.asyncio
    async def test_update_without_returned_rows_echoes_input(self, mock_client):
        client, builder = mock_client

        result = await SupabaseRemote(client).update("customers", "a", {"id": "a", "name": "B"})

        builder.update.assert_called_with({"id": "a", "name": "B"})
        builder.eq.assert_called_with("id", "a")
        assert result.value == {"id": "a", "name": "B"}

    @pytest.mark.asyncio
    async def test_upsert(self, mock_client):
        client, builder = mock_client

        result = await SupabaseRemote(client).upsert("customers", {"id": "a"})

        assert result.ok
        builder.upsert.assert_called_with({"id": "a"})

    @pytest.mark.asyncio
    async def test_delete(self, mock_client):
        client, builder = mock_client
        builder.execute.return_value = MagicMock(data=[{"id": "a"}])

        result = await SupabaseRemote(client).delete("customers", "a")

        assert result.ok
        builder.delete.assert_called_once()
        builder.eq.assert_called_with("id", "a")

    @pytest.mark.asyncio
    async def test_delete_nothing_matched_is_not_found(self, mock_client):
        client, _ = mock_client

        result = await SupabaseRemote(client).delete("customers", "missing")

        assert result.is_error(ErrorKind.NOT_FOUND)

    @pytest.mark.asyncio
    async def test_foreign_key_on_delete(self, mock_client):
        client, builder = mock_client
        builder.execute.side_effect = api_error("23503", "violates foreign key constraint")

        result = await SupabaseRemote(client).delete("customers", "a")

        assert result.is_error(ErrorKind.CONSTRAINT)

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, mock_client):
        client, builder = mock_client
        builder.execute.side_effect = httpx.ConnectError("connection refused")

        result = await SupabaseRemote(client).select("customers")

        assert result.is_error(ErrorKind.TRANSIENT)
        assert "ConnectError" in result.failure.message


class TestCreateRemote:
    @pytest.mark.asyncio
    async def test_requires_credentials(self):
        with pytest.raises(ValueError):
            await create_remote(SyncSettings(_env_file=None))
