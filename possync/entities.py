"""Entity kinds handled by the sync engine.

Each kind maps to one local collection and one remote table through the
``ENTITY_SPECS`` dispatch table. The record dataclasses give callers a typed
view of a stored document; the engine itself moves plain dicts so that
columns it does not know about survive a round trip.
"""

import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from .types import RecordValidationError, UnknownEntityError, strip_local_fields, utc_now


class EntityKind(str, Enum):
    """Canonical entity kind values."""

    CUSTOMER = "customers"
    PROFESSIONAL = "professionals"
    SERVICE = "services"
    PRODUCT = "products"
    APPOINTMENT = "appointments"
    CASH_SESSION = "cash_sessions"
    TIME_PUNCH = "time_punches"


# === Typed records ===


@dataclass
class EntityRecord:
    """Fields every synced record carries."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Columns not declared on the dataclass, preserved verbatim.
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EntityRecord":
        known = {f.name for f in fields(cls)} - {"extra"}
        row = strip_local_fields(row)
        values = {k: v for k, v in row.items() if k in known}
        extra = {k: v for k, v in row.items() if k not in known}
        return cls(**values, extra=extra)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        extra = row.pop("extra") or {}
        row.update(extra)
        return row


@dataclass
class Customer(EntityRecord):
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    birth_date: Optional[str] = None
    notes: Optional[str] = None
    active: bool = True


@dataclass
class Professional(EntityRecord):
    name: str = ""
    calendar_color: Optional[str] = None
    commission_rate: float = 0.0
    active: bool = True


@dataclass
class Service(EntityRecord):
    name: str = ""
    category: Optional[str] = None
    duration_minutes: int = 30
    price: float = 0.0
    default_commission: float = 0.0
    active: bool = True


@dataclass
class Product(EntityRecord):
    name: str = ""
    barcode: Optional[str] = None
    sale_price: float = 0.0
    cost_price: Optional[float] = None
    stock: int = 0
    active: bool = True


@dataclass
class Appointment(EntityRecord):
    customer_id: Optional[str] = None
    professional_id: Optional[str] = None
    service_id: Optional[str] = None
    starts_at: Optional[str] = None
    duration_minutes: int = 30
    status: str = "scheduled"
    notes: Optional[str] = None


@dataclass
class CashSession(EntityRecord):
    opened_at: Optional[str] = None
    closed_at: Optional[str] = None
    opening_balance: float = 0.0
    closing_balance: Optional[float] = None
    status: str = "open"
    operator: Optional[str] = None


@dataclass
class TimePunch(EntityRecord):
    professional_id: Optional[str] = None
    punched_at: Optional[str] = None
    direction: str = "in"  # in, out
    source: Optional[str] = None


# === Dispatch table ===


@dataclass(frozen=True)
class EntitySpec:
    """How one entity kind is stored and synced."""

    kind: EntityKind
    table: str  # remote table name
    record_cls: Type[EntityRecord]
    # Boolean column flipped to False when a hard delete is refused remotely.
    soft_delete_field: Optional[str] = None


ENTITY_SPECS: Dict[EntityKind, EntitySpec] = {
    EntityKind.CUSTOMER: EntitySpec(EntityKind.CUSTOMER, "customers", Customer, "active"),
    EntityKind.PROFESSIONAL: EntitySpec(
        EntityKind.PROFESSIONAL, "professionals", Professional, "active"
    ),
    EntityKind.SERVICE: EntitySpec(EntityKind.SERVICE, "services", Service, "active"),
    EntityKind.PRODUCT: EntitySpec(EntityKind.PRODUCT, "products", Product, "active"),
    EntityKind.APPOINTMENT: EntitySpec(EntityKind.APPOINTMENT, "appointments", Appointment),
    EntityKind.CASH_SESSION: EntitySpec(EntityKind.CASH_SESSION, "cash_sessions", CashSession),
    EntityKind.TIME_PUNCH: EntitySpec(EntityKind.TIME_PUNCH, "time_punches", TimePunch),
}


def resolve_entity(entity: Union[EntityKind, str]) -> EntityKind:
    """Coerce an entity name to its EntityKind."""
    if isinstance(entity, EntityKind):
        return entity
    try:
        return EntityKind(entity)
    except ValueError:
        raise UnknownEntityError(str(entity)) from None


def get_spec(entity: Union[EntityKind, str]) -> EntitySpec:
    """Look up the dispatch entry for an entity kind."""
    return ENTITY_SPECS[resolve_entity(entity)]


def to_row(record: Union[EntityRecord, Dict[str, Any]]) -> Dict[str, Any]:
    """Normalize a typed record or dict into a plain row dict."""
    if isinstance(record, EntityRecord):
        return record.to_row()
    return dict(record)


def to_record(entity: Union[EntityKind, str], row: Dict[str, Any]) -> EntityRecord:
    """Typed view of a stored row."""
    return get_spec(entity).record_cls.from_row(row)


def prepare_new(row: Dict[str, Any], now: Optional[str] = None) -> Dict[str, Any]:
    """Assign id and timestamps to a record created locally."""
    now = now or utc_now()
    row = strip_local_fields(row)
    if not row.get("id"):
        row["id"] = str(uuid.uuid4())
    if not row.get("created_at"):
        row["created_at"] = now
    row["updated_at"] = now
    return row


def require_id(row: Dict[str, Any]) -> str:
    record_id = row.get("id")
    if not record_id:
        raise RecordValidationError("Record has no id")
    return str(record_id)
