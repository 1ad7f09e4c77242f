"""Ledger of local writes the remote store has not confirmed yet."""
import logging
import time
from dataclasses import dataclass, field
from datetime import date, tzinfo
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from tipsync import monitoring
from tipsync.models.domain import LogEntry
from tipsync.models.sync_models import EntityType, Mutation, MutationKind
from tipsync.utils.dt_utils import day_of

logger = logging.getLogger(__name__)

PendingKey = Tuple[EntityType, str]


@dataclass
class EventIntent:
    """Net effect of the local event mutations of one item."""
    added: Dict[date, LogEntry] = field(default_factory=dict)
    removed: Set[date] = field(default_factory=set)


@dataclass
class PendingWrite:
    """A local mutation sent (or about to be sent) to the remote store."""
    entity_type: EntityType
    entity_id: str
    kind: MutationKind
    cycle_id: Optional[str] = None
    value: Any = None
    changed_fields: FrozenSet[str] = frozenset()
    day: Optional[date] = None
    failed: bool = False
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)

    @property
    def key(self) -> PendingKey:
        return (self.entity_type, self.entity_id)

    @property
    def item_id(self) -> Optional[str]:
        if self.entity_type is not EntityType.EVENT_LOG:
            return None
        return self.entity_id.split("/", 1)[1]


class PendingWriteTracker:
    """Pending writes keyed by (entity type, entity id).

    Successive mutations of one entity fold into a single entry: upserts
    accumulate their changed fields, event mutations accumulate the days
    they add and remove. The ledger lives in memory only.
    """

    def __init__(self):
        self._writes: Dict[PendingKey, PendingWrite] = {}

    def __len__(self) -> int:
        return len(self._writes)

    def __contains__(self, key: PendingKey) -> bool:
        return key in self._writes

    def get(self, entity_type: EntityType, entity_id: str) -> Optional[PendingWrite]:
        return self._writes.get((entity_type, entity_id))

    def for_type(self, entity_type: EntityType, cycle_id: Optional[str] = None) -> List[PendingWrite]:
        return [
            w for w in self._writes.values()
            if w.entity_type is entity_type and (cycle_id is None or w.cycle_id == cycle_id)
        ]

    def all(self) -> List[PendingWrite]:
        return list(self._writes.values())

    def failed(self) -> List[PendingWrite]:
        return [w for w in self._writes.values() if w.failed]

    def record(self, mutation: Mutation, tz: Optional[tzinfo] = None) -> PendingWrite:
        """Fold a mutation into the ledger and return its entry."""
        existing = self._writes.get(mutation.key)
        if mutation.entity_type is EntityType.EVENT_LOG:
            pending = self._record_event(existing, mutation, tz)
        elif (
            existing is not None
            and existing.kind is MutationKind.UPSERT
            and mutation.kind is MutationKind.UPSERT
        ):
            existing.value = mutation.value
            existing.changed_fields = existing.changed_fields | mutation.changed_fields
            pending = existing
        elif existing is not None and mutation.entity_type is EntityType.EVENT_PRUNE:
            existing.day = max(existing.day, mutation.day)
            pending = existing
        else:
            pending = PendingWrite(
                entity_type=mutation.entity_type,
                entity_id=mutation.entity_id,
                kind=mutation.kind,
                cycle_id=mutation.cycle_id,
                value=mutation.value,
                changed_fields=mutation.changed_fields,
                day=mutation.day,
            )
        pending.failed = False
        self._writes[pending.key] = pending
        monitoring.pending_writes.set(len(self._writes))
        logger.debug(f"Pending write recorded: {pending.entity_type.value} {pending.entity_id} ({pending.kind.value})")
        return pending

    def _record_event(
        self,
        existing: Optional[PendingWrite],
        mutation: Mutation,
        tz: Optional[tzinfo],
    ) -> PendingWrite:
        if existing is None:
            existing = PendingWrite(
                entity_type=mutation.entity_type,
                entity_id=mutation.entity_id,
                kind=mutation.kind,
                cycle_id=mutation.cycle_id,
                value=EventIntent(),
            )
        intent: EventIntent = existing.value
        if mutation.kind is MutationKind.LOG:
            day = day_of(mutation.value.timestamp, tz)
            intent.added[day] = mutation.value
            intent.removed.discard(day)
        else:
            intent.added.pop(mutation.day, None)
            intent.removed.add(mutation.day)
        existing.kind = mutation.kind
        return existing

    def confirm(self, entity_type: EntityType, entity_id: str) -> Optional[PendingWrite]:
        """Remove an entry the remote store now reflects."""
        pending = self._writes.pop((entity_type, entity_id), None)
        if pending is not None:
            monitoring.pending_writes.set(len(self._writes))
            monitoring.confirmed_writes.labels(entity_type=entity_type.value).inc()
            logger.debug(f"Pending write confirmed: {entity_type.value} {entity_id}")
        return pending

    def mark_sent(self, pending: PendingWrite) -> None:
        pending.attempts += 1

    def mark_failed(self, entity_type: EntityType, entity_id: str, error: Exception) -> None:
        pending = self._writes.get((entity_type, entity_id))
        if pending is not None:
            pending.failed = True
            pending.last_error = str(error)

    def clear(self) -> None:
        self._writes.clear()
        monitoring.pending_writes.set(0)
