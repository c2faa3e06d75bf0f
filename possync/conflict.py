"""Last-write-wins conflict resolution.

Whole-record granularity: the version with the strictly later
``updated_at`` wins, ties go to the local side. Fields are never merged.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from .types import EPOCH, parse_datetime


class Side(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class Resolution:
    winner: Dict[str, Any]
    side: Side

    @property
    def remote_wins(self) -> bool:
        return self.side is Side.REMOTE


def record_time(record: Dict[str, Any]):
    """The record's updated_at, or the epoch when missing or unparseable."""
    return parse_datetime(record.get("updated_at")) or EPOCH


def resolve(local: Dict[str, Any], remote: Dict[str, Any]) -> Resolution:
    if record_time(remote) > record_time(local):
        return Resolution(winner=remote, side=Side.REMOTE)
    return Resolution(winner=local, side=Side.LOCAL)
