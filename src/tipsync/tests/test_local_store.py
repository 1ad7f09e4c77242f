"""Tests for the durable local cache."""
import logging
from datetime import UTC, date, datetime
from unittest.mock import Mock

from sqlalchemy.exc import OperationalError

from tipsync.models.domain import Category, GroupedItem, LogEntry, RoomState, Unit
from tipsync.models.models import CacheEntry
from tipsync.services.local_store import EVENTS_KEY, LocalStore


def test_state_round_trip(local_store, make_cycle, make_item):
    cycle = make_cycle(1)
    item = make_item(Category.TREATMENT, dose=2.0, unit="nuts", weekly_doses={1: 1.0, 2: 3.0})
    group = GroupedItem("g1", "Evening", Category.TREATMENT, (item.id,))
    state = RoomState(
        cycles={cycle.id: cycle},
        items={cycle.id: {item.id: item}},
        grouped_items={cycle.id: {group.id: group}},
        units={"u1": Unit("u1", "nuts")},
        events={cycle.id: {item.id: [LogEntry(datetime(2024, 3, 15, 9, 30, tzinfo=UTC), "alice")]}},
        category_collapsed={"Treatment": True},
        group_collapsed={"g1": False},
    )

    assert local_store.save_state(state) is True
    assert local_store.load_state() == state


def test_empty_cache_loads_empty_state(local_store):
    assert local_store.load_state() == RoomState()
    assert local_store.load_last_reset_date() is None


def test_last_reset_date(local_store):
    local_store.save_last_reset_date(date(2024, 3, 15))
    assert local_store.load_last_reset_date() == date(2024, 3, 15)


def test_corrupt_entry_is_ignored(local_store, session_factory, caplog):
    """Test that a blob that is not valid JSON loads as missing."""
    session = session_factory()
    session.add(CacheEntry(key=EVENTS_KEY, payload="{broken"))
    session.commit()
    session.close()
    local_store.put("units", {"u1": {"name": "mg"}})

    with caplog.at_level(logging.WARNING):
        assert local_store.get(EVENTS_KEY) is None
        assert local_store.get("units") == {"u1": {"name": "mg"}}
    assert "Ignoring corrupt cache entry" in caplog.text


def test_write_failure_is_reported_not_raised(caplog):
    session = Mock()
    session.commit.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
    store = LocalStore(session_factory=lambda: session)

    with caplog.at_level(logging.ERROR):
        assert store.put("units", {}) is False
    session.rollback.assert_called_once()
    session.close.assert_called_once()
    assert "Error writing cache entries" in caplog.text


def test_unserializable_value_is_reported(local_store):
    assert local_store.put("units", {"u1": object()}) is False
