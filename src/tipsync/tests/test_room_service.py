"""Tests for room operations."""
import threading
from datetime import UTC, date, datetime, timedelta
from unittest.mock import patch

import pytest

from tipsync.models.domain import Category, GroupedItem, LogEntry, RoomState, new_id
from tipsync.models.sync_models import EntityType, MutationRejectedError, Snapshot
from tipsync.services.room_service import RoomService
from tipsync.services.timer_service import TimerStatus

from conftest import NOW


@pytest.fixture
def cycle(room, make_cycle):
    return room.add_cycle(make_cycle(1))


@pytest.fixture
def treatments(room, cycle, make_item):
    return [room.add_item(cycle.id, make_item(Category.TREATMENT, name=f"Dose {n}")) for n in range(3)]


def test_add_item_validation(room, cycle, make_item):
    first = room.add_item(cycle.id, make_item())
    second = room.add_item(cycle.id, make_item())
    assert first.order == 0
    assert second.order == 1

    with pytest.raises(MutationRejectedError):
        room.add_item("missing-cycle", make_item())
    with pytest.raises(MutationRejectedError):
        room.add_item(cycle.id, first)
    with pytest.raises(MutationRejectedError):
        room.add_item(cycle.id, make_item(name="   "))


def test_update_item_writes_changed_fields(room, gateway, cycle, make_item):
    item = room.add_item(cycle.id, make_item(dose=1.0, unit="mg"))
    updated = room.update_item(cycle.id, item.id, dose=2.5)

    assert updated.dose == 2.5
    assert updated.name == item.name
    assert gateway.get(f"cycles/{cycle.id}/items/{item.id}")["dose"] == 2.5
    assert room.engine.state.items[cycle.id][item.id] == updated

    with pytest.raises(MutationRejectedError):
        room.update_item(cycle.id, item.id, colour="red")
    with pytest.raises(MutationRejectedError):
        room.update_item(cycle.id, "missing", dose=1.0)


def test_remove_item_drops_it_from_groups(room, gateway, cycle, make_item):
    a = room.add_item(cycle.id, make_item(Category.MAINTENANCE))
    b = room.add_item(cycle.id, make_item(Category.MAINTENANCE))
    group = room.add_grouped_item(cycle.id, GroupedItem(new_id(), "Morning", Category.MAINTENANCE, (a.id, b.id)))

    room.remove_item(cycle.id, a.id)

    state = room.engine.state
    assert a.id not in state.items[cycle.id]
    assert state.grouped_items[cycle.id][group.id].item_ids == (b.id,)
    assert gateway.get(f"cycles/{cycle.id}/items/{a.id}") is None
    assert gateway.get(f"cycles/{cycle.id}/groupedItems/{group.id}")["itemIds"] == [b.id]
    assert len(room.engine.pending) == 0


def test_grouped_item_validation(room, cycle, make_item):
    medicine = room.add_item(cycle.id, make_item(Category.MEDICINE))
    with pytest.raises(MutationRejectedError):
        room.add_grouped_item(cycle.id, GroupedItem(new_id(), "Empty", Category.MEDICINE, ()))
    with pytest.raises(MutationRejectedError):
        room.add_grouped_item(cycle.id, GroupedItem(new_id(), "Wrong", Category.MAINTENANCE, (medicine.id,)))
    with pytest.raises(MutationRejectedError):
        room.add_grouped_item(cycle.id, GroupedItem(new_id(), "Unknown", Category.MEDICINE, ("nope",)))

    group = room.add_grouped_item(cycle.id, GroupedItem(new_id(), "Pills", Category.MEDICINE, (medicine.id,)))
    room.remove_grouped_item(cycle.id, group.id)
    assert room.engine.state.grouped_items[cycle.id] == {}
    with pytest.raises(MutationRejectedError):
        room.remove_grouped_item(cycle.id, group.id)


def test_add_cycle_copies_latest_cycle(room, cycle, make_cycle, make_item):
    """Test that a new cycle gets copies of the previous cycle's items and groups."""
    a = room.add_item(cycle.id, make_item(Category.MAINTENANCE, name="Oats"))
    b = room.add_item(cycle.id, make_item(Category.MAINTENANCE, name="Milk"))
    room.add_grouped_item(cycle.id, GroupedItem(new_id(), "Breakfast", Category.MAINTENANCE, (a.id, b.id)))

    second = room.add_cycle(make_cycle(2, datetime(2024, 3, 1, tzinfo=UTC)))

    state = room.engine.state
    copied = state.items[second.id]
    assert sorted(i.name for i in copied.values()) == ["Milk", "Oats"]
    assert not set(copied) & {a.id, b.id}
    (group,) = state.grouped_items[second.id].values()
    assert set(group.item_ids) == set(copied)

    with pytest.raises(MutationRejectedError):
        room.add_cycle(second)


def test_current_cycle(room, cycle, make_cycle):
    second = room.add_cycle(make_cycle(2, datetime(2024, 3, 1, tzinfo=UTC)))
    assert room.current_cycle(date(2024, 2, 15)).id == cycle.id
    assert room.current_cycle().id == second.id


def test_add_unit(room):
    unit = room.add_unit(" drops ")
    assert unit.name == "drops"
    assert room.engine.state.units[unit.id] == unit
    with pytest.raises(MutationRejectedError):
        room.add_unit("drops")
    with pytest.raises(MutationRejectedError):
        room.add_unit("mg")
    with pytest.raises(MutationRejectedError):
        room.add_unit("  ")


def test_log_and_remove_consumption(room, gateway, cycle, make_item):
    item = room.add_item(cycle.id, make_item(Category.RECOMMENDED))
    entry = room.log_consumption(cycle.id, item.id, now=NOW + timedelta(microseconds=1500))

    assert entry == LogEntry(NOW, "device-a")
    assert room.is_logged(cycle.id, item.id)
    assert gateway.get(f"consumptionLog/{cycle.id}/{item.id}") == [entry.to_dict()]

    # The entry already stored for the day is kept
    room.log_consumption(cycle.id, item.id, now=NOW + timedelta(hours=2))
    assert room.engine.state.entries_for(cycle.id, item.id) == [entry]

    room.remove_consumption(cycle.id, item.id)
    assert not room.is_logged(cycle.id, item.id)
    assert gateway.get(f"consumptionLog/{cycle.id}/{item.id}") is None

    with pytest.raises(MutationRejectedError):
        room.log_consumption(cycle.id, "missing")


def test_timer_restarts_per_log_and_stops_when_done(room, gateway, cycle, treatments):
    """Test that each treatment log restarts the timer for the items still pending."""
    first, second, third = treatments

    room.log_consumption(cycle.id, first.id, now=NOW)
    timer = room.engine.state.timer
    assert room.engine.timer_status is TimerStatus.RUNNING
    assert timer.associated_item_ids == (second.id, third.id)
    assert timer.end_time == NOW + timedelta(seconds=900)
    assert gateway.get("treatmentTimer") == timer.to_dict()

    later = NOW + timedelta(minutes=1)
    room.log_consumption(cycle.id, second.id, now=later)
    restarted = room.engine.state.timer
    assert restarted.associated_item_ids == (third.id,)
    assert restarted.end_time == later + timedelta(seconds=900)
    assert restarted.correlation_id != timer.correlation_id

    room.log_consumption(cycle.id, third.id, now=later)
    assert room.engine.state.timer is None
    assert room.engine.timer_status is TimerStatus.STOPPED
    assert gateway.get("treatmentTimer") is None
    assert len(room.engine.pending) == 0


def test_category_collapses_when_complete(room, cycle, treatments):
    for item in treatments:
        room.log_consumption(cycle.id, item.id, now=NOW)
    assert room.engine.state.category_collapsed == {"Treatment": True}

    room.remove_consumption(cycle.id, treatments[0].id)
    assert room.engine.state.category_collapsed == {"Treatment": False}
    assert room.pending_items(cycle.id, Category.TREATMENT) == [treatments[0].id]


def test_toggle_group(room, cycle, make_item):
    """Test that toggling logs missing members together and clears a complete group."""
    a = room.add_item(cycle.id, make_item(Category.MAINTENANCE))
    b = room.add_item(cycle.id, make_item(Category.MAINTENANCE))
    group = room.add_grouped_item(cycle.id, GroupedItem(new_id(), "Snack", Category.MAINTENANCE, (a.id, b.id)))

    assert room.toggle_group(cycle.id, group.id, now=NOW) is True
    assert room.is_group_complete(cycle.id, group.id)
    state = room.engine.state
    assert state.entries_for(cycle.id, a.id) == state.entries_for(cycle.id, b.id) == [LogEntry(NOW, "device-a")]
    assert state.category_collapsed["Maintenance"] is True

    assert room.toggle_group(cycle.id, group.id, now=NOW) is False
    assert not room.is_logged(cycle.id, a.id)
    assert not room.is_logged(cycle.id, b.id)
    assert room.engine.state.category_collapsed["Maintenance"] is False

    with pytest.raises(MutationRejectedError):
        room.toggle_group(cycle.id, "missing")


def test_queries_read_one_state_copy(room, cycle, treatments):
    """Test that per-item checks share one copy of the room state."""
    room.log_consumption(cycle.id, treatments[0].id, now=NOW)
    group = room.add_grouped_item(
        cycle.id, GroupedItem(new_id(), "All", Category.TREATMENT, tuple(i.id for i in treatments))
    )
    copy_state = RoomState.copy

    with patch.object(RoomState, "copy", autospec=True, side_effect=copy_state) as copies:
        assert room.pending_items(cycle.id, Category.TREATMENT) == [treatments[1].id, treatments[2].id]
        assert not room.is_group_complete(cycle.id, group.id)
    assert copies.call_count == 2


def test_validation_sees_a_snapshot_that_holds_the_lock(room, cycle, make_item):
    """Test that an operation validates against the state left by an in-flight snapshot."""
    item = make_item()
    errors = []

    def add() -> None:
        try:
            room.add_item(cycle.id, item)
        except MutationRejectedError as e:
            errors.append(e)

    worker = threading.Thread(target=add)
    with room.engine.lock:
        worker.start()
        worker.join(timeout=0.05)
        assert worker.is_alive()
        room.engine.apply_remote_snapshot(Snapshot("cycles", {}))
    worker.join(timeout=1)

    assert not worker.is_alive()
    assert len(errors) == 1
    assert room.engine.state.cycles == {}
    assert room.engine.pending.get(EntityType.ITEM, item.id) is None

def test_timer_operations(room):
    with pytest.raises(MutationRejectedError):
        room.snooze_timer()

    started = room.start_timer(["a"], now=NOW)
    snoozed = room.snooze_timer(now=NOW + timedelta(seconds=10))
    assert snoozed.correlation_id == started.correlation_id
    assert snoozed.end_time == NOW + timedelta(seconds=310)
    assert room.engine.timer_status is TimerStatus.SNOOZED

    assert room.stop_timer() is True
    assert room.dismiss_timer() is False


def test_disabled_timer(engine, gateway, make_cycle, make_item):
    engine.attach(gateway)
    room = RoomService(engine, timer_enabled=False)
    cycle = room.add_cycle(make_cycle(1))
    a = room.add_item(cycle.id, make_item(Category.TREATMENT))
    room.add_item(cycle.id, make_item(Category.TREATMENT))

    room.log_consumption(cycle.id, a.id, now=NOW)
    assert engine.state.timer is None
    with pytest.raises(MutationRejectedError):
        room.start_timer([a.id])
