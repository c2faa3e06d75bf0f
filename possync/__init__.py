"""
possync - Offline-first sync engine for point-of-sale and scheduling data.

Local writes never wait for the network; they are replayed to the remote
when connectivity returns.
"""

from .engine import SyncEngine
from .entities import EntityKind
from .types import ErrorKind, OperationKind, Result, WriteOutcome

try:
    from importlib.metadata import version

    __version__ = version("possync")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SyncEngine", "EntityKind", "ErrorKind", "OperationKind", "Result", "WriteOutcome"]
