"""Room operations: the mutation boundary in front of the reconciliation engine."""
import logging
from dataclasses import fields, replace
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from tipsync.config import settings
from tipsync.models.domain import Category, Cycle, GroupedItem, Item, LogEntry, RoomState, TimerState, Unit, new_id
from tipsync.models.sync_models import Mutation, MutationRejectedError
from tipsync.services import event_log
from tipsync.services.cycle_service import current_cycle, latest_cycle
from tipsync.services.reconciliation_service import ReconciliationEngine
from tipsync.utils.dt_utils import ensure_aware, today

logger = logging.getLogger(__name__)

# Category whose partial completion starts the shared timer
TIMER_CATEGORY = Category.TREATMENT

ITEM_FIELDS = frozenset(f.name for f in fields(Item)) - {"id"}


class RoomService:
    """Validates user operations and turns them into engine mutations.

    Logical conflicts are rejected with :class:`MutationRejectedError` before
    anything is applied.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        timer_enabled: bool = settings.sync.timer_enabled,
        timer_duration: float = settings.sync.timer_duration,
        snooze_duration: float = settings.sync.snooze_duration,
    ):
        self.engine = engine
        self.timer_enabled = timer_enabled
        self.timer_duration = timer_duration
        self.snooze_duration = snooze_duration

    @property
    def tz(self):
        return self.engine.tz

    def _today(self, now: Optional[datetime] = None) -> date:
        return today(self.tz, now or self.engine.clock())

    @staticmethod
    def _require_cycle(state: RoomState, cycle_id: str) -> None:
        if cycle_id not in state.cycles:
            raise MutationRejectedError(f"Unknown cycle {cycle_id}")

    def _require_item(self, state: RoomState, cycle_id: str, item_id: str) -> Item:
        self._require_cycle(state, cycle_id)
        item = state.items.get(cycle_id, {}).get(item_id)
        if item is None:
            raise MutationRejectedError(f"Unknown item {item_id} in cycle {cycle_id}")
        return item

    # Cycles

    def current_cycle(self, day: Optional[date] = None) -> Optional[Cycle]:
        return current_cycle(self.engine.state.cycles.values(), day or self._today(), self.tz)

    def add_cycle(self, cycle: Cycle, copy_items_from: Optional[str] = None) -> Cycle:
        """Add a cycle, copying the items and groups of another one.

        Without ``copy_items_from`` the latest existing cycle is copied. Copies
        get new ids; group members are remapped to the copied items.
        """
        with self.engine.lock:
            state = self.engine.state
            if cycle.id in state.cycles:
                raise MutationRejectedError(f"Cycle {cycle.id} already exists")
            if copy_items_from is not None and copy_items_from not in state.cycles:
                raise MutationRejectedError(f"Unknown cycle {copy_items_from}")
            source = state.cycles.get(copy_items_from) if copy_items_from else latest_cycle(state.cycles.values())

            self.engine.apply_local_mutation(Mutation.upsert_cycle(cycle))
            if source is None:
                return cycle

            id_map: Dict[str, str] = {}
            for item in state.sorted_items(source.id):
                copy = replace(item, id=new_id())
                id_map[item.id] = copy.id
                self.engine.apply_local_mutation(Mutation.upsert_item(cycle.id, copy))
            for group in state.grouped_items.get(source.id, {}).values():
                members = tuple(id_map[i] for i in group.item_ids if i in id_map)
                copy = replace(group, id=new_id(), item_ids=members)
                self.engine.apply_local_mutation(Mutation.upsert_group(cycle.id, copy))
            logger.info(f"Added cycle {cycle.number} with {len(id_map)} items copied from cycle {source.number}")
        return cycle

    # Items

    def add_item(self, cycle_id: str, item: Item) -> Item:
        if not item.name.strip():
            raise MutationRejectedError("Item name cannot be empty")
        with self.engine.lock:
            state = self.engine.state
            self._require_cycle(state, cycle_id)
            items = state.items.get(cycle_id, {})
            if item.id in items:
                raise MutationRejectedError(f"Item {item.id} already exists")
            if item.order == 0 and items:
                item = replace(item, order=len(items))
            self.engine.apply_local_mutation(Mutation.upsert_item(cycle_id, item))
        return item

    def update_item(self, cycle_id: str, item_id: str, **changes) -> Item:
        """Change some fields of an item; only those fields are protected until confirmed."""
        unknown = set(changes) - ITEM_FIELDS
        if unknown:
            raise MutationRejectedError(f"Unknown item fields: {sorted(unknown)}")
        if "name" in changes and not str(changes["name"]).strip():
            raise MutationRejectedError("Item name cannot be empty")
        with self.engine.lock:
            item = self._require_item(self.engine.state, cycle_id, item_id)
            updated = replace(item, **changes)
            self.engine.apply_local_mutation(Mutation.upsert_item(cycle_id, updated, changes.keys()))
        return updated

    def remove_item(self, cycle_id: str, item_id: str) -> None:
        """Remove an item and drop it from the groups that contain it."""
        with self.engine.lock:
            state = self.engine.state
            self._require_item(state, cycle_id, item_id)
            for group in state.grouped_items.get(cycle_id, {}).values():
                if item_id in group.item_ids:
                    members = tuple(i for i in group.item_ids if i != item_id)
                    self.engine.apply_local_mutation(
                        Mutation.upsert_group(cycle_id, replace(group, item_ids=members), ["item_ids"])
                    )
            self.engine.apply_local_mutation(Mutation.remove_item(cycle_id, item_id))

    # Grouped items

    def add_grouped_item(self, cycle_id: str, group: GroupedItem) -> GroupedItem:
        if not group.item_ids:
            raise MutationRejectedError("A group needs at least one item")
        with self.engine.lock:
            state = self.engine.state
            self._require_cycle(state, cycle_id)
            items = state.items.get(cycle_id, {})
            for item_id in group.item_ids:
                item = items.get(item_id)
                if item is None:
                    raise MutationRejectedError(f"Item {item_id} is not in cycle {cycle_id}")
                if item.category is not group.category:
                    raise MutationRejectedError(
                        f"Item {item.name} is {item.category.value}, group is {group.category.value}"
                    )
            self.engine.apply_local_mutation(Mutation.upsert_group(cycle_id, group))
        return group

    def remove_grouped_item(self, cycle_id: str, group_id: str) -> None:
        with self.engine.lock:
            state = self.engine.state
            self._require_cycle(state, cycle_id)
            if group_id not in state.grouped_items.get(cycle_id, {}):
                raise MutationRejectedError(f"Unknown group {group_id}")
            self.engine.apply_local_mutation(Mutation.remove_group(cycle_id, group_id))

    # Units

    def add_unit(self, name: str) -> Unit:
        name = name.strip()
        if not name:
            raise MutationRejectedError("Unit name cannot be empty")
        with self.engine.lock:
            if any(unit.name == name for unit in self.engine.state.units.values()):
                raise MutationRejectedError(f"Unit {name!r} already exists")
            unit = Unit(id=new_id(), name=name)
            self.engine.apply_local_mutation(Mutation.upsert_unit(unit))
        return unit

    # Completion events

    def log_consumption(self, cycle_id: str, item_id: str, now: Optional[datetime] = None) -> LogEntry:
        """Log an item as done now. An item keeps one entry per day."""
        now = ensure_aware(now or self.engine.clock())
        day = self._today(now)
        entry = LogEntry(timestamp=now.replace(microsecond=0), actor_id=self.engine.actor_id)
        with self.engine.lock:
            item = self._require_item(self.engine.state, cycle_id, item_id)
            self.engine.apply_local_mutation(Mutation.log_event(cycle_id, item_id, entry))
            if item.category is TIMER_CATEGORY:
                self._update_timer(cycle_id, now)
            self._update_collapsed(cycle_id, item.category, day)
        return entry

    def remove_consumption(self, cycle_id: str, item_id: str, day: Optional[date] = None) -> None:
        day = day or self._today()
        with self.engine.lock:
            item = self._require_item(self.engine.state, cycle_id, item_id)
            self.engine.apply_local_mutation(Mutation.unlog_day(cycle_id, item_id, day))
            self._update_collapsed(cycle_id, item.category, day)

    def _is_logged(self, state: RoomState, cycle_id: str, item_id: str, day: date) -> bool:
        return event_log.has_entry_on(state.entries_for(cycle_id, item_id), day, self.tz)

    def _pending_items(self, state: RoomState, cycle_id: str, category: Category, day: date) -> List[str]:
        return [
            item.id for item in state.sorted_items(cycle_id)
            if item.category is category and not self._is_logged(state, cycle_id, item.id, day)
        ]

    def _is_group_complete(self, state: RoomState, group: Optional[GroupedItem], cycle_id: str, day: date) -> bool:
        if group is None or not group.item_ids:
            return False
        return all(self._is_logged(state, cycle_id, item_id, day) for item_id in group.item_ids)

    def is_logged(self, cycle_id: str, item_id: str, day: Optional[date] = None) -> bool:
        return self._is_logged(self.engine.state, cycle_id, item_id, day or self._today())

    def is_group_complete(self, cycle_id: str, group_id: str, day: Optional[date] = None) -> bool:
        state = self.engine.state
        group = state.grouped_items.get(cycle_id, {}).get(group_id)
        return self._is_group_complete(state, group, cycle_id, day or self._today())

    def toggle_group(self, cycle_id: str, group_id: str, now: Optional[datetime] = None) -> bool:
        """Clear a complete group for the day, otherwise log its missing members.

        Returns True if the group is complete afterwards.
        """
        now = ensure_aware(now or self.engine.clock())
        day = self._today(now)
        with self.engine.lock:
            state = self.engine.state
            self._require_cycle(state, cycle_id)
            group = state.grouped_items.get(cycle_id, {}).get(group_id)
            if group is None:
                raise MutationRejectedError(f"Unknown group {group_id}")
            members = [i for i in group.item_ids if i in state.items.get(cycle_id, {})]

            if self._is_group_complete(state, group, cycle_id, day):
                for item_id in members:
                    self.engine.apply_local_mutation(Mutation.unlog_day(cycle_id, item_id, day))
                self._update_collapsed(cycle_id, group.category, day)
                return False
            entry = LogEntry(timestamp=now.replace(microsecond=0), actor_id=self.engine.actor_id)
            for item_id in members:
                if not self._is_logged(state, cycle_id, item_id, day):
                    self.engine.apply_local_mutation(Mutation.log_event(cycle_id, item_id, entry))
            if group.category is TIMER_CATEGORY:
                self._update_timer(cycle_id, now)
            self._update_collapsed(cycle_id, group.category, day)
            return True

    def pending_items(self, cycle_id: str, category: Category, day: Optional[date] = None) -> List[str]:
        """Ids of the items of a category not yet logged on a day."""
        return self._pending_items(self.engine.state, cycle_id, category, day or self._today())

    # Display flags

    def set_category_collapsed(self, category: Category, collapsed: bool) -> None:
        self.engine.apply_local_mutation(Mutation.set_category_collapsed(category, collapsed))

    def set_group_collapsed(self, group_id: str, collapsed: bool) -> None:
        self.engine.apply_local_mutation(Mutation.set_group_collapsed(group_id, collapsed))

    # Timer

    def _update_timer(self, cycle_id: str, now: datetime) -> None:
        """Start or stop the timer after items of the timer category were logged."""
        if not self.timer_enabled:
            return
        day = self._today(now)
        state = self.engine.state
        category_items = [i for i in state.sorted_items(cycle_id) if i.category is TIMER_CATEGORY]
        pending = self._pending_items(state, cycle_id, TIMER_CATEGORY, day)

        if not pending or len(pending) == len(category_items):
            if self.engine.stop_timer():
                logger.info(f"{len(category_items) - len(pending)} of {len(category_items)} timed items done, timer stopped")
            return
        # Each newly logged item restarts the countdown for the rest
        self.engine.start_timer(self.timer_duration, pending, now)

    def _update_collapsed(self, cycle_id: str, category: Category, day: date) -> None:
        """Collapse a category once all of its items are done today, expand it otherwise."""
        state = self.engine.state
        items = [i for i in state.sorted_items(cycle_id) if i.category is category]
        complete = bool(items) and not self._pending_items(state, cycle_id, category, day)
        if state.category_collapsed.get(category.value, False) != complete:
            self.set_category_collapsed(category, complete)

    def start_timer(self, item_ids: Iterable[str], duration: Optional[float] = None,
                    now: Optional[datetime] = None) -> TimerState:
        if not self.timer_enabled:
            raise MutationRejectedError("The timer is disabled")
        return self.engine.start_timer(duration or self.timer_duration, list(item_ids), now)

    def stop_timer(self) -> bool:
        return self.engine.stop_timer()

    def snooze_timer(self, duration: Optional[float] = None, now: Optional[datetime] = None) -> TimerState:
        state = self.engine.snooze_timer(duration or self.snooze_duration, now)
        if state is None:
            raise MutationRejectedError(f"Cannot snooze a timer that is {self.engine.timer_status.value}")
        return state

    def dismiss_timer(self) -> bool:
        return self.engine.dismiss_timer()
