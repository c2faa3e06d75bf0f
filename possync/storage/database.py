"""SQLite connection management shared by the local store and sync queue.

Connections are opened per operation and closed by the ``connect()``
context manager, which also commits on success and rolls back on error.
Store methods are wrapped with ``returns_result`` so that a broken or
unavailable database surfaces as a ``STORAGE`` failure instead of an
exception.
"""

import contextlib
import functools
import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..types import ErrorKind, Result
from .schema import init_db

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_possync_home() -> Path:
    """Directory holding the offline database (POSSYNC_HOME or ~/.possync)."""
    env_home = os.environ.get("POSSYNC_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".possync"


def to_json(data: Any) -> str:
    """Convert to JSON string."""
    return json.dumps(data, default=str, sort_keys=True)


def from_json(s: Optional[str]) -> Any:
    """Parse JSON string."""
    if not s:
        return None
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        logger.warning("Discarding undecodable JSON value from local store")
        return None


def returns_result(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[Result[T]]]:
    """Wrap an async store method so storage errors become failed Results."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs) -> Result[T]:
        try:
            return Result.success(await fn(*args, **kwargs))
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Local storage error in {fn.__qualname__}: {e}", exc_info=True)
            return Result.fail(ErrorKind.STORAGE, str(e))

    return wrapper


class SQLiteDatabase:
    """A durable SQLite file holding records, queue and metadata."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path is not None else get_possync_home() / "offline.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            init_db(conn, self.db_path)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def connect(self):
        """Context manager that handles transactions AND closes connection."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()
