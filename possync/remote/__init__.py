"""Remote data service adapters.

``SupabaseRemote`` lives in ``possync.remote.supabase`` and is imported
explicitly so the core engine does not load the Supabase client.
"""

from .base import RemoteDataService, Row, call_remote

__all__ = ["RemoteDataService", "Row", "call_remote"]
