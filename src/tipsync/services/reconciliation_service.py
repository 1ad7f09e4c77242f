"""Reconciliation of local optimistic writes with remote snapshots.

The engine owns the in-memory room state. Local mutations are applied at
once, recorded in the pending-write ledger and sent to the remote store
without waiting. Remote snapshots are merged per sub-tree against the
ledger, so a snapshot that has not caught up with a local write never
erases it, and a snapshot that reflects the write confirms it.
"""
import logging
import threading
from dataclasses import replace
from datetime import date, datetime, tzinfo
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from tipsync import monitoring
from tipsync.config import DEFAULT_UNITS
from tipsync.gateway import paths
from tipsync.gateway.base import RemoteGateway, Subscription
from tipsync.models.domain import (
    Decoded,
    ItemLog,
    LogEntry,
    RoomState,
    TimerState,
    Unit,
    decode_cycle,
    decode_grouped_item,
    decode_item,
    decode_log_entry,
    decode_timer,
    decode_unit,
    entries_to_wire,
)
from tipsync.models.sync_models import EntityType, Mutation, MutationKind, Snapshot, TIMER_ENTITY_ID
from tipsync.services import event_log
from tipsync.services.local_store import LocalStore
from tipsync.services.pending_writes import EventIntent, PendingWrite, PendingWriteTracker
from tipsync.services.timer_service import TimerStateMachine, TimerStatus
from tipsync.utils.dt_utils import day_of, now_utc, to_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")
Observer = Callable[[RoomState], None]


def _same_value(a: Any, b: Any) -> bool:
    # Remote timestamps have second precision
    if isinstance(a, datetime) and isinstance(b, datetime):
        return to_iso(a) == to_iso(b)
    return a == b


def _entry_list(raw: Any) -> List[Any]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        # Sparse arrays arrive as index-keyed mappings
        return [raw[k] for k in sorted(raw, key=lambda k: (len(str(k)), str(k)))]
    return []


class ReconciliationEngine:
    """Single owner of the room state.

    Both entry points, :meth:`apply_local_mutation` and
    :meth:`apply_remote_snapshot`, run under one re-entrant lock; gateways
    may deliver snapshots from inside a write call.
    """

    def __init__(
        self,
        local_store: LocalStore,
        timer: TimerStateMachine,
        actor_id: str,
        tz: Optional[tzinfo] = None,
        gateway: Optional[RemoteGateway] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.local_store = local_store
        self.timer = timer
        self.actor_id = actor_id
        self.tz = tz
        self.clock = clock
        self.pending = PendingWriteTracker()
        self.gateway: Optional[RemoteGateway] = None
        self.lock = threading.RLock()
        self._state = RoomState()
        self._observers: Dict[int, Observer] = {}
        self._next_observer = 0
        self._subscriptions: List[Subscription] = []
        self._units_received = False
        if gateway is not None:
            self.attach(gateway)

    @property
    def state(self) -> RoomState:
        """A copy of the current room state."""
        with self.lock:
            return self._state.copy()

    @property
    def timer_status(self) -> TimerStatus:
        return self.timer.status

    # Observers

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer of state changes. Returns a function that unregisters it."""
        with self.lock:
            observer_id = self._next_observer
            self._next_observer += 1
            self._observers[observer_id] = observer

        def unsubscribe() -> None:
            with self.lock:
                self._observers.pop(observer_id, None)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self._state.copy()
        for observer in list(self._observers.values()):
            try:
                observer(snapshot)
            except Exception as e:
                logger.error(f"Error in state observer {observer!r}: {e}")

    def _persist(self) -> None:
        self.local_store.save_state(self._state)

    # Lifecycle

    def load_cached(self) -> RoomState:
        """Replace the in-memory state with the durable cache."""
        with self.lock:
            state = self.local_store.load_state()
            self._add_default_units(state.units)
            self.timer.restore(self.timer.writer.store.load(), self.clock())
            state.timer = self.timer.state
            self._state = state
            logger.info(
                f"Loaded cache: {len(state.cycles)} cycles, {len(state.units)} units, "
                f"last reset {state.last_reset_date}"
            )
            self._notify()
            return self._state.copy()

    def attach(self, gateway: RemoteGateway) -> None:
        """Subscribe to every sub-tree of the room and send outstanding writes."""
        with self.lock:
            if self.gateway is not None:
                self.detach()
            self.gateway = gateway
            for path in paths.SUBSCRIBED_PATHS:
                self._subscriptions.append(gateway.subscribe(path, self.apply_remote_snapshot))
            logger.info(f"Subscribed to {len(self._subscriptions)} remote paths")
            for pending in self.pending.all():
                self._send(pending)

    def detach(self) -> None:
        """Cancel every subscription. Local state is kept."""
        with self.lock:
            for subscription in self._subscriptions:
                subscription.cancel()
            self._subscriptions.clear()
            self.gateway = None
            logger.info("Detached from remote store")

    def resubscribe(self) -> None:
        with self.lock:
            gateway = self.gateway
            if gateway is not None:
                self.detach()
                self.attach(gateway)

    # Local mutations

    def apply_local_mutation(self, mutation: Mutation) -> RoomState:
        """Apply a mutation optimistically, record it and send it.

        Returns the updated state without waiting for the remote store.
        """
        with self.lock:
            self.retry_failed_writes()
            self._apply(self._state, mutation)
            pending = self.pending.record(mutation, self.tz)
            monitoring.local_mutations.labels(entity_type=mutation.entity_type.value).inc()
            logger.debug(f"Applied local {mutation.kind.value} of {mutation.entity_type.value} {mutation.entity_id}")
            self._persist()
            self._notify()
            self._send(pending)
            return self._state.copy()

    def _apply(self, state: RoomState, mutation: Mutation) -> None:
        kind = mutation.kind
        entity_type = mutation.entity_type
        cycle_id = mutation.cycle_id

        if entity_type is EntityType.CYCLE:
            state.cycles[mutation.entity_id] = mutation.value
            state.items.setdefault(mutation.entity_id, {})
            state.grouped_items.setdefault(mutation.entity_id, {})
        elif entity_type in (EntityType.ITEM, EntityType.GROUPED_ITEM):
            collection = state.items if entity_type is EntityType.ITEM else state.grouped_items
            records = collection.setdefault(cycle_id, {})
            if kind is MutationKind.REMOVE:
                records.pop(mutation.entity_id, None)
            else:
                records[mutation.entity_id] = mutation.value
        elif entity_type is EntityType.UNIT:
            state.units[mutation.entity_id] = mutation.value
        elif entity_type is EntityType.EVENT_LOG:
            log = state.events.setdefault(cycle_id, {})
            entries = log.get(mutation.item_id, [])
            if kind is MutationKind.LOG:
                entries = event_log.add_entry(entries, mutation.value, self.tz)
            else:
                entries = event_log.remove_day(entries, mutation.day, self.tz)
            if entries:
                log[mutation.item_id] = entries
            else:
                log.pop(mutation.item_id, None)
            if not log:
                state.events.pop(cycle_id, None)
        elif entity_type is EntityType.EVENT_PRUNE:
            pruned = event_log.prune_before(state.events.get(cycle_id, {}), mutation.day, self.tz)
            if pruned:
                state.events[cycle_id] = pruned
            else:
                state.events.pop(cycle_id, None)
        elif entity_type is EntityType.TIMER:
            state.timer = mutation.value
        elif entity_type is EntityType.CATEGORY_FLAG:
            state.category_collapsed[mutation.entity_id] = mutation.value
        elif entity_type is EntityType.GROUP_FLAG:
            state.group_collapsed[mutation.entity_id] = mutation.value
        else:
            raise ValueError(f"Unsupported mutation: {mutation}")

    # Remote writes

    def retry_failed_writes(self) -> int:
        """Send again every write that failed. Returns the number of writes resent."""
        with self.lock:
            if self.gateway is None:
                return 0
            failed = self.pending.failed()
            for pending in failed:
                logger.info(f"Retrying write of {pending.entity_type.value} {pending.entity_id} (attempt {pending.attempts + 1})")
                pending.failed = False
                self._send(pending)
            return len(failed)

    def _send(self, pending: PendingWrite) -> None:
        if self.gateway is None:
            logger.debug(f"No remote store attached, holding {pending.entity_type.value} {pending.entity_id}")
            return

        self.pending.mark_sent(pending)
        entity_type = pending.entity_type
        completion = self._completion(pending)

        if entity_type is EntityType.EVENT_LOG:
            self._send_event_log(pending, completion)
        elif entity_type is EntityType.EVENT_PRUNE:
            self._send_prune(pending, completion)
        elif entity_type is EntityType.CYCLE:
            cycle_id = pending.entity_id
            value = pending.value.to_dict()
            value["items"] = {iid: item.to_dict() for iid, item in self._state.items.get(cycle_id, {}).items()}
            value["groupedItems"] = {
                gid: group.to_dict() for gid, group in self._state.grouped_items.get(cycle_id, {}).items()
            }
            self.gateway.write_value(paths.cycle_path(cycle_id), value, completion)
        elif entity_type in (EntityType.ITEM, EntityType.GROUPED_ITEM):
            path_for = paths.item_path if entity_type is EntityType.ITEM else paths.grouped_item_path
            value = None if pending.kind is MutationKind.REMOVE else pending.value.to_dict()
            self.gateway.write_value(path_for(pending.cycle_id, pending.entity_id), value, completion)
        elif entity_type is EntityType.UNIT:
            self.gateway.write_value(paths.unit_path(pending.entity_id), pending.value.to_dict(), completion)
        elif entity_type is EntityType.TIMER:
            value = pending.value.to_dict() if pending.value else None
            self.gateway.write_value(paths.TIMER, value, completion)
        elif entity_type is EntityType.CATEGORY_FLAG:
            self.gateway.write_value(paths.category_flag_path(pending.entity_id), pending.value, completion)
        elif entity_type is EntityType.GROUP_FLAG:
            self.gateway.write_value(paths.group_flag_path(pending.entity_id), pending.value, completion)

    def _completion(self, pending: PendingWrite) -> Callable[[Optional[Exception]], None]:
        def complete(error: Optional[Exception]) -> None:
            with self.lock:
                if error is not None:
                    self._record_failure(pending, error, f"write_{pending.entity_type.value}")
                elif self._state.sync_error and not self.pending.failed():
                    self._state.sync_error = None
                    self._notify()

        return complete

    def _record_failure(self, pending: PendingWrite, error: Exception, operation: str) -> None:
        logger.error(f"Sync error ({operation}) for {pending.entity_type.value} {pending.entity_id}: {error}")
        monitoring.sync_errors.labels(operation=operation).inc()
        self.pending.mark_failed(pending.entity_type, pending.entity_id, error)
        self._state.sync_error = f"Could not sync {pending.entity_type.value}: {error}"
        self._notify()

    def _send_event_log(self, pending: PendingWrite, completion) -> None:
        """Read the remote list, apply the local intent to it and write it back."""
        path = paths.event_log_path(pending.cycle_id, pending.item_id)

        def on_snapshot(snapshot: Snapshot) -> None:
            with self.lock:
                if self.pending.get(pending.entity_type, pending.entity_id) is not pending:
                    return
                if self.gateway is None:
                    return
                intent: EventIntent = pending.value
                entries = self._decode_entries(snapshot.value, EntityType.EVENT_LOG)
                if self._confirm_intent(pending, entries):
                    # Remote already has these days; its entries win
                    self._replace_entries(pending.cycle_id, pending.item_id, event_log.dedup_entries(entries, self.tz))
                    completion(None)
                    return
                for day in intent.removed:
                    entries = event_log.remove_day(entries, day, self.tz)
                for entry in intent.added.values():
                    entries = event_log.add_entry(entries, entry, self.tz)
                entries = event_log.dedup_entries(entries, self.tz)
                self.gateway.write_value(path, entries_to_wire(entries) or None, completion)

        def on_error(error: Exception) -> None:
            with self.lock:
                self._record_failure(pending, error, "read_event_log")

        self.gateway.observe_once(path, on_snapshot, on_error)

    def _replace_entries(self, cycle_id: str, item_id: str, entries: List[LogEntry]) -> None:
        log = self._state.events.setdefault(cycle_id, {})
        if entries:
            log[item_id] = entries
        else:
            log.pop(item_id, None)
        if not log:
            self._state.events.pop(cycle_id, None)
        self._persist()
        self._notify()

    def _send_prune(self, pending: PendingWrite, completion) -> None:
        path = paths.cycle_log_path(pending.cycle_id)

        def on_snapshot(snapshot: Snapshot) -> None:
            with self.lock:
                if self.pending.get(pending.entity_type, pending.entity_id) is not pending:
                    return
                if self.gateway is None:
                    return
                raw = snapshot.value if isinstance(snapshot.value, dict) else {}
                log, _ = self._decode_cycle_log(raw)
                stale = [iid for iid, entries in log.items() if self._has_entries_before({iid: entries}, pending.day)]
                if not stale:
                    self.pending.confirm(pending.entity_type, pending.entity_id)
                    completion(None)
                    return
                pruned = event_log.prune_before(log, pending.day, self.tz)
                for item_id in stale:
                    value = entries_to_wire(pruned[item_id]) if item_id in pruned else None
                    self.gateway.write_value(paths.event_log_path(pending.cycle_id, item_id), value, completion)

        def on_error(error: Exception) -> None:
            with self.lock:
                self._record_failure(pending, error, "read_event_log")

        self.gateway.observe_once(path, on_snapshot, on_error)

    # Remote snapshots

    def apply_remote_snapshot(self, snapshot: Snapshot) -> RoomState:
        """Merge a snapshot of one sub-tree into the state."""
        with self.lock:
            handlers = {
                paths.CYCLES: self._merge_cycles,
                paths.UNITS: self._merge_units,
                paths.CONSUMPTION_LOG: self._merge_events,
                paths.TIMER: self._merge_timer,
                paths.CATEGORY_COLLAPSED: self._merge_category_flags,
                paths.GROUP_COLLAPSED: self._merge_group_flags,
            }
            path = "/".join(paths.split(snapshot.path))
            handler = handlers.get(path)
            if handler is None:
                logger.warning(f"Ignoring snapshot of unknown path {snapshot.path!r}")
                return self._state.copy()

            monitoring.remote_snapshots.labels(path=path).inc()
            handler(snapshot.value)
            self._persist()
            self._notify()

            if path in (paths.CYCLES, paths.UNITS) and self._units_received:
                self.ensure_item_units_exist()
            return self._state.copy()

    def _decode_all(
        self,
        raw: Any,
        decoder: Callable[[str, Any], Decoded[T]],
        entity_type: EntityType,
    ) -> Tuple[Optional[Dict[str, T]], Set[str]]:
        """Decode a mapping of records; returns the records and the ids that failed.

        An absent collection decodes as empty; one that is not a mapping
        decodes as None so the caller can keep what it has cached.
        """
        records: Dict[str, T] = {}
        malformed: Set[str] = set()
        if raw is None:
            return records, malformed
        if not isinstance(raw, dict):
            logger.warning(f"Skipping {entity_type.value} collection: not a mapping")
            monitoring.malformed_entities.labels(entity_type=entity_type.value).inc()
            return None, malformed
        for key, value in raw.items():
            decoded = decoder(str(key), value)
            if decoded.ok:
                records[str(key)] = decoded.value
            else:
                logger.warning(f"Skipping malformed {decoded.error}")
                monitoring.malformed_entities.labels(entity_type=entity_type.value).inc()
                malformed.add(str(key))
        return records, malformed

    def _merge_collection(
        self,
        local: Dict[str, T],
        remote: Dict[str, T],
        malformed: Set[str],
        entity_type: EntityType,
        cycle_id: Optional[str] = None,
    ) -> Dict[str, T]:
        """Merge one collection against the pending upserts and removals of its entities."""
        pending = {p.entity_id: p for p in self.pending.for_type(entity_type, cycle_id)}
        merged: Dict[str, T] = {}

        for entity_id, remote_value in remote.items():
            write = pending.get(entity_id)
            if write is None:
                merged[entity_id] = remote_value
            elif write.kind is MutationKind.REMOVE:
                # Removal not propagated yet
                continue
            elif all(_same_value(getattr(remote_value, f), getattr(write.value, f)) for f in write.changed_fields):
                self.pending.confirm(entity_type, entity_id)
                merged[entity_id] = remote_value
            else:
                merged[entity_id] = replace(
                    remote_value, **{f: getattr(write.value, f) for f in write.changed_fields}
                )

        for entity_id, write in pending.items():
            if entity_id in remote:
                continue
            if write.kind is MutationKind.REMOVE:
                self.pending.confirm(entity_type, entity_id)
            else:
                merged[entity_id] = write.value

        for entity_id in malformed:
            if entity_id in local and entity_id not in merged:
                merged[entity_id] = local[entity_id]
        return merged

    def _merge_cycles(self, raw: Any) -> None:
        if raw is None and self._state.cycles:
            logger.info("Remote cycles node is empty, keeping cached cycles")
            return
        if raw is not None and not isinstance(raw, dict):
            logger.warning("Skipping cycles snapshot: not a mapping")
            monitoring.malformed_entities.labels(entity_type=EntityType.CYCLE.value).inc()
            return

        raw = raw or {}
        remote_cycles, malformed = self._decode_all(raw, decode_cycle, EntityType.CYCLE)
        cycles = self._merge_collection(self._state.cycles, remote_cycles, malformed, EntityType.CYCLE)

        items: Dict[str, Dict[str, Any]] = {}
        groups: Dict[str, Dict[str, Any]] = {}
        for cycle_id in cycles:
            node = raw.get(cycle_id)
            if node is not None and not isinstance(node, dict):
                # Malformed cycle node, its children stay as cached
                items[cycle_id] = self._state.items.get(cycle_id, {})
                groups[cycle_id] = self._state.grouped_items.get(cycle_id, {})
                continue
            node = node or {}
            items[cycle_id] = self._merge_children(
                node.get("items"), self._state.items, decode_item, EntityType.ITEM, cycle_id
            )
            groups[cycle_id] = self._merge_children(
                node.get("groupedItems"), self._state.grouped_items, decode_grouped_item,
                EntityType.GROUPED_ITEM, cycle_id,
            )

        self._state.cycles = cycles
        self._state.items = items
        self._state.grouped_items = groups

    def _merge_children(
        self,
        raw: Any,
        cached: Dict[str, Dict[str, T]],
        decoder: Callable[[str, Any], Decoded[T]],
        entity_type: EntityType,
        cycle_id: str,
    ) -> Dict[str, T]:
        """Merge the items or groups of one cycle."""
        local = cached.get(cycle_id, {})
        remote, malformed = self._decode_all(raw, decoder, entity_type)
        if remote is None:
            return local
        return self._merge_collection(local, remote, malformed, entity_type, cycle_id)

    def _merge_units(self, raw: Any) -> None:
        remote_units, malformed = self._decode_all(raw, decode_unit, EntityType.UNIT)
        if remote_units is None:
            return
        units = self._merge_collection(self._state.units, remote_units, malformed, EntityType.UNIT)
        self._add_default_units(units)
        self._state.units = self._dedup_units(units, set(remote_units))
        self._units_received = True

    @staticmethod
    def _add_default_units(units: Dict[str, Unit]) -> None:
        names = {unit.name for unit in units.values()}
        for name in DEFAULT_UNITS:
            if name not in names:
                unit = Unit.named(name)
                units[unit.id] = unit

    @staticmethod
    def _dedup_units(units: Dict[str, Unit], remote_ids: Set[str]) -> Dict[str, Unit]:
        """Keep one unit per name: a remote record when there is one, then the lowest id."""
        by_name: Dict[str, Unit] = {}
        for unit in sorted(units.values(), key=lambda u: (u.id not in remote_ids, u.id)):
            by_name.setdefault(unit.name, unit)
        return {unit.id: unit for unit in by_name.values()}

    def _decode_entries(self, raw: Any, entity_type: EntityType) -> List[LogEntry]:
        entries = []
        for value in _entry_list(raw):
            decoded = decode_log_entry(value)
            if decoded.ok:
                entries.append(decoded.value)
            else:
                logger.warning(f"Skipping malformed {decoded.error}")
                monitoring.malformed_entities.labels(entity_type=entity_type.value).inc()
        return entries

    def _decode_cycle_log(self, raw: Dict[Any, Any]) -> Tuple[ItemLog, Set[str]]:
        """Decode one cycle's log; returns it and the ids of items whose entries are not a list."""
        log: ItemLog = {}
        malformed: Set[str] = set()
        for item_id, entries in raw.items():
            if entries is not None and not isinstance(entries, (list, dict)):
                logger.warning(f"Skipping malformed {EntityType.EVENT_LOG.value} {item_id}: not a list")
                monitoring.malformed_entities.labels(entity_type=EntityType.EVENT_LOG.value).inc()
                malformed.add(str(item_id))
                continue
            decoded = self._decode_entries(entries, EntityType.EVENT_LOG)
            if decoded:
                log[str(item_id)] = decoded
        return log, malformed

    def _merge_events(self, raw: Any) -> None:
        remote: Dict[str, ItemLog] = {}
        malformed_cycles: Set[str] = set()
        malformed_items: Dict[str, Set[str]] = {}
        if isinstance(raw, dict):
            for cycle_id, cycle_log in raw.items():
                cycle_id = str(cycle_id)
                if not isinstance(cycle_log, dict):
                    logger.warning(f"Skipping consumption log of cycle {cycle_id}: not a mapping")
                    monitoring.malformed_entities.labels(entity_type=EntityType.EVENT_LOG.value).inc()
                    malformed_cycles.add(cycle_id)
                    continue
                log, malformed_items[cycle_id] = self._decode_cycle_log(cycle_log)
                log = event_log.dedup_log(log, self.tz)
                if log:
                    remote[cycle_id] = log
        elif raw is not None:
            logger.warning("Skipping consumption log snapshot: not a mapping")
            monitoring.malformed_entities.labels(entity_type=EntityType.EVENT_LOG.value).inc()
            return

        intents = self.pending.for_type(EntityType.EVENT_LOG)
        prunes = {p.cycle_id: p for p in self.pending.for_type(EntityType.EVENT_PRUNE)}
        cycle_ids = set(remote) | {p.cycle_id for p in intents} | set(prunes)
        cycle_ids |= {cycle_id for cycle_id, bad in malformed_items.items() if bad}
        cycle_ids -= malformed_cycles

        events: Dict[str, ItemLog] = {}
        for cycle_id in malformed_cycles:
            # Malformed cycle log, kept as cached
            if cycle_id in self._state.events:
                events[cycle_id] = self._state.events[cycle_id]
        for cycle_id in cycle_ids:
            remote_log = remote.get(cycle_id, {})
            bad_items = malformed_items.get(cycle_id, set())
            prune = prunes.get(cycle_id)
            if prune is not None:
                if not bad_items and not self._has_entries_before(remote_log, prune.day):
                    self.pending.confirm(EntityType.EVENT_PRUNE, cycle_id)
                remote_log = event_log.prune_before(remote_log, prune.day, self.tz)

            local_added: ItemLog = {}
            removed: List[Tuple[str, date]] = []
            for write in [p for p in intents if p.cycle_id == cycle_id]:
                intent: EventIntent = write.value
                if intent.added:
                    local_added[write.item_id] = list(intent.added.values())
                removed.extend((write.item_id, day) for day in intent.removed)
                if write.item_id not in bad_items:
                    self._confirm_intent(write, remote.get(cycle_id, {}).get(write.item_id, []))

            merged = event_log.merge_event_sets(local_added, remote_log, removed, self.tz)
            cached = self._state.events.get(cycle_id, {})
            for item_id in bad_items:
                if item_id in cached:
                    merged[item_id] = cached[item_id]
            if prune is not None:
                merged = event_log.prune_before(merged, prune.day, self.tz)
            if merged:
                events[cycle_id] = merged

        self._state.events = events

    def _has_entries_before(self, log: ItemLog, day: date) -> bool:
        return any(day_of(e.timestamp, self.tz) < day for entries in log.values() for e in entries)

    def _confirm_intent(self, write: PendingWrite, remote_entries: List[LogEntry]) -> bool:
        """Confirm an event intent the remote entries already reflect."""
        intent: EventIntent = write.value
        remote_days = {day_of(e.timestamp, self.tz) for e in remote_entries}
        if set(intent.added) <= remote_days and not intent.removed & remote_days:
            self.pending.confirm(write.entity_type, write.entity_id)
            return True
        return False

    def _merge_timer(self, raw: Any) -> None:
        remote: Optional[TimerState] = None
        if raw is not None:
            decoded = decode_timer(raw)
            if not decoded.ok:
                logger.warning(f"Skipping malformed {decoded.error}")
                monitoring.malformed_entities.labels(entity_type=EntityType.TIMER.value).inc()
                return
            remote = decoded.value

        write = self.pending.get(EntityType.TIMER, TIMER_ENTITY_ID)
        if write is not None:
            expected = write.value.to_dict() if write.value else None
            if (remote.to_dict() if remote else None) == expected:
                self.pending.confirm(EntityType.TIMER, TIMER_ENTITY_ID)
            else:
                # Local timer write not propagated yet
                return

        if self.timer.adopt(remote, self.clock()):
            logger.info(f"Adopted remote timer state: {self.timer.status.value}")
        self._state.timer = self.timer.state

    def _merge_flags(self, raw: Any, entity_type: EntityType, cached: Dict[str, bool]) -> Dict[str, bool]:
        if raw is not None and not isinstance(raw, dict):
            logger.warning(f"Skipping {entity_type.value} snapshot: not a mapping")
            monitoring.malformed_entities.labels(entity_type=entity_type.value).inc()
            return cached
        remote: Dict[str, bool] = {}
        malformed: Set[str] = set()
        for key, value in (raw or {}).items():
            if isinstance(value, bool):
                remote[str(key)] = value
            else:
                logger.warning(f"Skipping malformed {entity_type.value} {key}: {value!r}")
                monitoring.malformed_entities.labels(entity_type=entity_type.value).inc()
                malformed.add(str(key))
        merged = {key: cached[key] for key in malformed if key in cached}
        merged.update(remote)
        for write in self.pending.for_type(entity_type):
            if write.entity_id not in malformed and remote.get(write.entity_id, False) == write.value:
                self.pending.confirm(entity_type, write.entity_id)
            else:
                merged[write.entity_id] = write.value
        return merged

    def _merge_category_flags(self, raw: Any) -> None:
        self._state.category_collapsed = self._merge_flags(
            raw, EntityType.CATEGORY_FLAG, self._state.category_collapsed
        )

    def _merge_group_flags(self, raw: Any) -> None:
        self._state.group_collapsed = self._merge_flags(raw, EntityType.GROUP_FLAG, self._state.group_collapsed)

    # Derived writes

    def ensure_item_units_exist(self) -> List[Unit]:
        """Create the units items refer to by name but the room does not have."""
        with self.lock:
            names = {unit.name for unit in self._state.units.values()}
            missing = sorted({
                item.unit
                for items in self._state.items.values()
                for item in items.values()
                if item.unit and item.unit not in names
            })
            created = []
            for name in missing:
                unit = Unit.named(name)
                logger.info(f"Creating unit {name!r} referenced by items")
                self.apply_local_mutation(Mutation.upsert_unit(unit))
                created.append(unit)
            return created

    # Timer

    def start_timer(self, duration: float, item_ids, now: Optional[datetime] = None) -> TimerState:
        with self.lock:
            state = self.timer.start(duration, item_ids, now or self.clock())
            self.apply_local_mutation(Mutation.set_timer(state))
            return state

    def stop_timer(self) -> bool:
        with self.lock:
            if not self.timer.stop():
                return False
            self.apply_local_mutation(Mutation.set_timer(None))
            return True

    def snooze_timer(self, duration: float, now: Optional[datetime] = None) -> Optional[TimerState]:
        with self.lock:
            state = self.timer.snooze(duration, now or self.clock())
            if state is not None:
                self.apply_local_mutation(Mutation.set_timer(state))
            return state

    def dismiss_timer(self) -> bool:
        with self.lock:
            if not self.timer.dismiss():
                return False
            self.apply_local_mutation(Mutation.set_timer(None))
            return True

    def tick(self, now: Optional[datetime] = None) -> bool:
        """Advance the timer. Expiry stays local; returns True when the timer expires."""
        with self.lock:
            expired = self.timer.tick(now or self.clock())
            if expired:
                self._notify()
            return expired

    def clear_stale_timer(self, now: Optional[datetime] = None) -> bool:
        with self.lock:
            cleared = self.timer.clear_if_stale(now or self.clock())
            if cleared:
                self._state.timer = None
                self._notify()
            return cleared

    # Rollover support

    def last_reset_date(self) -> Optional[date]:
        with self.lock:
            if self._state.last_reset_date is None:
                self._state.last_reset_date = self.local_store.load_last_reset_date()
            return self._state.last_reset_date

    def set_last_reset_date(self, day: date) -> None:
        with self.lock:
            self._state.last_reset_date = day
            self.local_store.save_last_reset_date(day)
            self._notify()
