"""possync storage.

Local-first durable storage using SQLite: entity records, the sync queue,
the failure log, conflict history and engine metadata share one file.
"""

from .database import SQLiteDatabase, get_possync_home
from .local import LocalStore
from .queue import SyncQueue, coalesce

__all__ = [
    "SQLiteDatabase",
    "LocalStore",
    "SyncQueue",
    "coalesce",
    "get_possync_home",
]
