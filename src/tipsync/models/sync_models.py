"""Models for mutations and snapshots exchanged with the reconciliation engine."""
from dataclasses import dataclass, field, fields
from datetime import date
from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional

from tipsync.models.domain import Category, Cycle, GroupedItem, Item, LogEntry, TimerState, Unit


class MutationRejectedError(ValueError):
    """A mutation conflicts with the current state and was not applied."""


class EntityType(Enum):
    """Kinds of records a mutation can touch."""
    CYCLE = "cycle"
    ITEM = "item"
    GROUPED_ITEM = "grouped_item"
    UNIT = "unit"
    EVENT_LOG = "event_log"  # entries of one item in one cycle
    EVENT_PRUNE = "event_prune"  # entries of a whole cycle before a day
    TIMER = "timer"
    CATEGORY_FLAG = "category_flag"
    GROUP_FLAG = "group_flag"


class MutationKind(Enum):
    """What a mutation does to its entity."""
    UPSERT = "upsert"
    REMOVE = "remove"
    LOG = "log"
    UNLOG = "unlog"
    PRUNE = "prune"
    SET = "set"


TIMER_ENTITY_ID = "shared"


def record_fields(record: Any) -> FrozenSet[str]:
    """Names of every field of a record except its id."""
    return frozenset(f.name for f in fields(record) if f.name != "id")


@dataclass(frozen=True)
class Mutation:
    """A local change to apply optimistically and send to the remote store."""
    entity_type: EntityType
    kind: MutationKind
    entity_id: str
    cycle_id: Optional[str] = None
    value: Any = None
    changed_fields: FrozenSet[str] = field(default_factory=frozenset)
    day: Optional[date] = None

    @property
    def key(self) -> tuple:
        return (self.entity_type, self.entity_id)

    @classmethod
    def upsert_cycle(cls, cycle: Cycle) -> "Mutation":
        return cls(EntityType.CYCLE, MutationKind.UPSERT, cycle.id, cycle.id, cycle, record_fields(cycle))

    @classmethod
    def upsert_item(cls, cycle_id: str, item: Item, changed: Optional[Iterable[str]] = None) -> "Mutation":
        changed_fields = frozenset(changed) if changed is not None else record_fields(item)
        return cls(EntityType.ITEM, MutationKind.UPSERT, item.id, cycle_id, item, changed_fields)

    @classmethod
    def remove_item(cls, cycle_id: str, item_id: str) -> "Mutation":
        return cls(EntityType.ITEM, MutationKind.REMOVE, item_id, cycle_id)

    @classmethod
    def upsert_group(cls, cycle_id: str, group: GroupedItem, changed: Optional[Iterable[str]] = None) -> "Mutation":
        changed_fields = frozenset(changed) if changed is not None else record_fields(group)
        return cls(EntityType.GROUPED_ITEM, MutationKind.UPSERT, group.id, cycle_id, group, changed_fields)

    @classmethod
    def remove_group(cls, cycle_id: str, group_id: str) -> "Mutation":
        return cls(EntityType.GROUPED_ITEM, MutationKind.REMOVE, group_id, cycle_id)

    @classmethod
    def upsert_unit(cls, unit: Unit) -> "Mutation":
        return cls(EntityType.UNIT, MutationKind.UPSERT, unit.id, None, unit, record_fields(unit))

    @classmethod
    def log_event(cls, cycle_id: str, item_id: str, entry: LogEntry) -> "Mutation":
        return cls(EntityType.EVENT_LOG, MutationKind.LOG, f"{cycle_id}/{item_id}", cycle_id, entry)

    @classmethod
    def unlog_day(cls, cycle_id: str, item_id: str, day: date) -> "Mutation":
        return cls(EntityType.EVENT_LOG, MutationKind.UNLOG, f"{cycle_id}/{item_id}", cycle_id, day=day)

    @classmethod
    def prune_events(cls, cycle_id: str, before: date) -> "Mutation":
        return cls(EntityType.EVENT_PRUNE, MutationKind.PRUNE, cycle_id, cycle_id, day=before)

    @classmethod
    def set_timer(cls, state: Optional[TimerState]) -> "Mutation":
        return cls(EntityType.TIMER, MutationKind.SET, TIMER_ENTITY_ID, value=state)

    @classmethod
    def set_category_collapsed(cls, category: Category, collapsed: bool) -> "Mutation":
        return cls(EntityType.CATEGORY_FLAG, MutationKind.SET, category.value, value=collapsed)

    @classmethod
    def set_group_collapsed(cls, group_id: str, collapsed: bool) -> "Mutation":
        return cls(EntityType.GROUP_FLAG, MutationKind.SET, group_id, value=collapsed)

    @property
    def item_id(self) -> Optional[str]:
        """Item id of an event-log mutation."""
        if self.entity_type is not EntityType.EVENT_LOG:
            return None
        return self.entity_id.split("/", 1)[1]


@dataclass(frozen=True)
class Snapshot:
    """A value delivered by the remote store for one path."""
    path: str
    value: Any = None

    @property
    def exists(self) -> bool:
        return self.value is not None
