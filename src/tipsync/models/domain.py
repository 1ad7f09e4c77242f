"""Domain records shared by every room member, with their wire codecs.

Remote records arrive as untyped key/value trees. Each record type has a
``decode_*`` function that returns a :class:`Decoded` result instead of
raising, so one malformed record never aborts the merge of a snapshot.
The dictionary key a record is stored under is its id; decoders take it
as a separate argument and ignore any ``id`` field inside the value.
"""
import copy
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from tipsync.utils.dt_utils import parse_iso, to_iso

T = TypeVar("T")

# Namespace for ids derived from unit names
UNIT_NAMESPACE = uuid.UUID("6f1c3a52-9a57-4f0e-b1d4-3f1f0c9f7a10")


class Category(Enum):
    """Item categories."""
    MEDICINE = "Medicine"
    MAINTENANCE = "Maintenance"
    TREATMENT = "Treatment"
    RECOMMENDED = "Recommended"


@dataclass(frozen=True)
class Decoded(Generic[T]):
    """Result of decoding one remote record."""
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Decoded[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "Decoded[T]":
        return cls(error=error)


def new_id() -> str:
    """Create a new record id."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Cycle:
    """A bounded scheduling period."""
    id: str
    number: int
    patient_name: str
    start_date: datetime
    challenge_date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "patientName": self.patient_name,
            "startDate": to_iso(self.start_date),
            "foodChallengeDate": to_iso(self.challenge_date),
        }


@dataclass(frozen=True)
class Item:
    """A loggable thing belonging to a cycle."""
    id: str
    name: str
    category: Category
    dose: Optional[float] = None
    unit: Optional[str] = None
    weekly_doses: Optional[Dict[int, float]] = None
    order: int = 0

    def dose_for_week(self, week: int) -> Optional[float]:
        """Get the dose scheduled for a week of the cycle."""
        if self.weekly_doses and week in self.weekly_doses:
            return self.weekly_doses[week]
        return self.dose

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "order": self.order,
        }
        if self.dose is not None:
            data["dose"] = self.dose
        if self.unit is not None:
            data["unit"] = self.unit
        if self.weekly_doses:
            data["weeklyDoses"] = {str(week): dose for week, dose in self.weekly_doses.items()}
        return data


@dataclass(frozen=True)
class GroupedItem:
    """A named bundle of items of one category, checked off together."""
    id: str
    name: str
    category: Category
    item_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "itemIds": list(self.item_ids),
        }


@dataclass(frozen=True)
class Unit:
    """A dosing unit. Two units with the same name are the same unit."""
    id: str
    name: str

    @classmethod
    def named(cls, name: str) -> "Unit":
        """Create a unit whose id is derived from its name."""
        return cls(id=str(uuid.uuid5(UNIT_NAMESPACE, name)), name=name)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class LogEntry:
    """A completion event: an item was done at a point in time by an actor."""
    timestamp: datetime
    actor_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": to_iso(self.timestamp), "userId": self.actor_id}


@dataclass(frozen=True)
class TimerState:
    """Durable state of the shared countdown timer."""
    is_active: bool
    end_time: datetime
    associated_item_ids: Tuple[str, ...] = ()
    correlation_id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.correlation_id,
            "isActive": self.is_active,
            "endTime": to_iso(self.end_time),
            "associatedItemIds": list(self.associated_item_ids),
        }


# item id -> entries
ItemLog = Dict[str, List[LogEntry]]


@dataclass
class RoomState:
    """In-memory view of a room, owned by the reconciliation engine."""
    cycles: Dict[str, Cycle] = field(default_factory=dict)
    items: Dict[str, Dict[str, Item]] = field(default_factory=dict)
    grouped_items: Dict[str, Dict[str, GroupedItem]] = field(default_factory=dict)
    units: Dict[str, Unit] = field(default_factory=dict)
    events: Dict[str, ItemLog] = field(default_factory=dict)
    timer: Optional[TimerState] = None
    category_collapsed: Dict[str, bool] = field(default_factory=dict)
    group_collapsed: Dict[str, bool] = field(default_factory=dict)
    last_reset_date: Optional[date] = None
    sync_error: Optional[str] = None

    def copy(self) -> "RoomState":
        return copy.deepcopy(self)

    def sorted_items(self, cycle_id: str) -> List[Item]:
        return sorted(self.items.get(cycle_id, {}).values(), key=lambda i: (i.order, i.name))

    def entries_for(self, cycle_id: str, item_id: str) -> List[LogEntry]:
        return list(self.events.get(cycle_id, {}).get(item_id, []))


def _parse_category(value: Any) -> Optional[Category]:
    try:
        return Category(value)
    except ValueError:
        return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _finite_float(value: Any) -> Optional[float]:
    """Convert a number or numeric string, or None if it is not a finite float."""
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def decode_cycle(key: str, raw: Any) -> Decoded[Cycle]:
    """Decode a cycle record."""
    if not isinstance(raw, dict):
        return Decoded.failure(f"cycle {key}: not a mapping")
    number = raw.get("number")
    name = raw.get("patientName")
    start = parse_iso(raw.get("startDate"))
    challenge = parse_iso(raw.get("foodChallengeDate"))
    if not isinstance(number, int) or isinstance(number, bool):
        return Decoded.failure(f"cycle {key}: missing number")
    if not isinstance(name, str):
        return Decoded.failure(f"cycle {key}: missing patientName")
    if start is None or challenge is None:
        return Decoded.failure(f"cycle {key}: invalid dates")
    return Decoded.success(Cycle(key, number, name, start, challenge))


def _decode_weekly_doses(raw: Any) -> Optional[Dict[int, float]]:
    if not isinstance(raw, dict):
        return None
    doses: Dict[int, float] = {}
    for week, value in raw.items():
        try:
            week_number = int(week)
        except (TypeError, ValueError):
            continue
        if not _is_number(value) and not isinstance(value, str):
            continue
        dose = _finite_float(value)
        if dose is not None:
            doses[week_number] = dose
    return doses or None


def decode_item(key: str, raw: Any) -> Decoded[Item]:
    """Decode an item record."""
    if not isinstance(raw, dict):
        return Decoded.failure(f"item {key}: not a mapping")
    name = raw.get("name")
    category = _parse_category(raw.get("category"))
    if not isinstance(name, str):
        return Decoded.failure(f"item {key}: missing name")
    if category is None:
        return Decoded.failure(f"item {key}: invalid category {raw.get('category')!r}")
    dose = raw.get("dose")
    if _is_number(dose):
        dose = _finite_float(dose)
        if dose is None:
            return Decoded.failure(f"item {key}: dose is not a finite number")
    else:
        dose = None
    unit = raw.get("unit")
    order = raw.get("order")
    return Decoded.success(Item(
        id=key,
        name=name,
        category=category,
        dose=dose,
        unit=unit if isinstance(unit, str) else None,
        weekly_doses=_decode_weekly_doses(raw.get("weeklyDoses")),
        order=order if isinstance(order, int) and not isinstance(order, bool) else 0,
    ))


def decode_grouped_item(key: str, raw: Any) -> Decoded[GroupedItem]:
    """Decode a grouped item record."""
    if not isinstance(raw, dict):
        return Decoded.failure(f"group {key}: not a mapping")
    name = raw.get("name")
    category = _parse_category(raw.get("category"))
    item_ids = raw.get("itemIds")
    if not isinstance(name, str):
        return Decoded.failure(f"group {key}: missing name")
    if category is None:
        return Decoded.failure(f"group {key}: invalid category")
    if not isinstance(item_ids, list):
        return Decoded.failure(f"group {key}: missing itemIds")
    members = tuple(i for i in item_ids if isinstance(i, str) and i)
    return Decoded.success(GroupedItem(key, name, category, members))


def decode_unit(key: str, raw: Any) -> Decoded[Unit]:
    """Decode a unit record."""
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        return Decoded.failure(f"unit {key}: missing name")
    return Decoded.success(Unit(key, raw["name"]))


def decode_log_entry(raw: Any) -> Decoded[LogEntry]:
    """Decode a completion event."""
    if not isinstance(raw, dict):
        return Decoded.failure("log entry: not a mapping")
    timestamp = parse_iso(raw.get("timestamp"))
    actor = raw.get("userId")
    if timestamp is None:
        return Decoded.failure("log entry: invalid timestamp")
    if not isinstance(actor, str) or not actor:
        return Decoded.failure("log entry: missing userId")
    return Decoded.success(LogEntry(timestamp, actor))


def decode_timer(raw: Any) -> Decoded[TimerState]:
    """Decode the shared timer record."""
    if not isinstance(raw, dict):
        return Decoded.failure("timer: not a mapping")
    correlation_id = raw.get("id")
    is_active = raw.get("isActive")
    end_time = parse_iso(raw.get("endTime"))
    if not isinstance(correlation_id, str) or not isinstance(is_active, bool) or end_time is None:
        return Decoded.failure("timer: missing id, isActive or endTime")
    item_ids = raw.get("associatedItemIds") or []
    if not isinstance(item_ids, list):
        item_ids = []
    return Decoded.success(TimerState(
        is_active=is_active,
        end_time=end_time,
        associated_item_ids=tuple(i for i in item_ids if isinstance(i, str)),
        correlation_id=correlation_id,
    ))


def entries_to_wire(entries: List[LogEntry]) -> List[Dict[str, Any]]:
    """Encode an item's entries in a stable order."""
    return [entry.to_dict() for entry in sorted(entries, key=lambda e: (e.timestamp, e.actor_id))]
