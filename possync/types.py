"""
Shared types for possync.

These are the vocabulary between the local store, the sync queue, the
remote adapters and the orchestrator. Every store and network call returns
a ``Result`` so failures travel as values rather than exceptions across
await points.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Generic, List, Optional, TypeVar

if TYPE_CHECKING:
    from .entities import EntityKind

T = TypeVar("T")

# Lower bound used when a record carries no usable timestamp.
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Bookkeeping fields the local store adds to every record. Never sent remotely.
LOCAL_FIELDS = ("synced", "local_updated_at")

DEFAULT_MAX_RETRIES = 5


# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string. Returns None for empty or invalid input."""
    if not s:
        return None
    if isinstance(s, datetime):
        return s if s.tzinfo else s.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(s).replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def strip_local_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a record without local bookkeeping fields."""
    return {k: v for k, v in record.items() if k not in LOCAL_FIELDS}


# === Enums ===


class OperationKind(str, Enum):
    """Kind of write intent held in the sync queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ErrorKind(str, Enum):
    """Failure taxonomy shared by the local store and remote adapters."""

    NOT_FOUND = "not_found"
    DUPLICATE_KEY = "duplicate_key"
    CONSTRAINT = "constraint"  # foreign-key / referential integrity
    TRANSIENT = "transient"  # network, 5xx, anything retryable
    TIMEOUT = "timeout"
    STORAGE = "storage"  # local store unavailable


# === Result ===


class ResultError(Exception):
    """Raised by Result.unwrap() on a failed result."""

    def __init__(self, failure: "Failure"):
        self.failure = failure
        super().__init__(f"{failure.kind.value}: {failure.message}")


@dataclass(frozen=True)
class Failure:
    """Why an operation failed."""

    kind: ErrorKind
    message: str
    code: Optional[str] = None  # backend-specific code, e.g. "23505"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success/failure variant returned by store and network operations."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, code: Optional[str] = None) -> "Result[T]":
        return cls(failure=Failure(kind=kind, message=message, code=code))

    def is_error(self, *kinds: ErrorKind) -> bool:
        return self.failure is not None and self.failure.kind in kinds

    def unwrap(self) -> T:
        if self.failure is not None:
            raise ResultError(self.failure)
        return self.value


# === Errors ===


class UnknownEntityError(ValueError):
    """Raised when an entity name has no entry in the dispatch table."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown entity: {name!r}")


class RecordValidationError(ValueError):
    """Raised when a record cannot be stored (e.g. it has no id)."""


# === Sync Types ===


@dataclass
class SyncOperation:
    """A write intent waiting to be applied remotely."""

    id: str
    entity: "EntityKind"
    kind: OperationKind
    payload: Dict[str, Any]
    enqueued_at: str
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None
    # Bumped whenever a newer intent for the same record is coalesced in.
    revision: int = 1

    @property
    def record_id(self) -> str:
        return self.payload["id"]


@dataclass
class SyncFailure:
    """An operation evicted after exhausting its retries."""

    id: str
    operation_id: str
    entity: str
    record_id: str
    kind: OperationKind
    payload: Dict[str, Any]
    retry_count: int
    last_error: Optional[str]
    failed_at: str


@dataclass
class SyncConflict:
    """A resolved conflict where the remote version superseded a local intent."""

    id: str
    entity: str
    record_id: str
    local_version: Dict[str, Any]
    remote_version: Dict[str, Any]
    resolution: str  # "remote_wins", "remote_deleted" or "local_wins"
    resolved_at: str


@dataclass
class DrainReport:
    """Outcome of one drain cycle."""

    pushed: int = 0  # operations applied remotely
    superseded: int = 0  # updates dropped because remote was newer
    retried: int = 0  # failures kept in the queue for the next cycle
    evicted: List[SyncFailure] = field(default_factory=list)
    skipped: bool = False  # cycle did not run (already draining, offline, store down)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.skipped and not self.errors

    @property
    def evicted_count(self) -> int:
        return len(self.evicted)


@dataclass
class WriteOutcome:
    """What happened to a caller-level write."""

    record: Optional[Dict[str, Any]]
    synced: bool = False  # confirmed by the remote within the call
    queued: bool = False  # saved locally, will sync later
    soft_deleted: bool = False  # delete fell back to deactivation
    error: Optional[Failure] = None
