"""Tests for the timer state machine and its debounced writer."""
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest

from tipsync.models.domain import TimerState
from tipsync.services.timer_service import DebouncedStateWriter, TimerStateMachine, TimerStatus

NOW = datetime(2024, 3, 15, 9, 30, tzinfo=UTC)


def read_file(store) -> dict:
    with open(store.path, encoding="utf-8") as f:
        return json.load(f)


def test_two_requests_in_window_write_final_state_once(timer_writer, timer_store, monotonic):
    """Test that two requests 100 ms apart with a 500 ms window give one write of the second."""
    timer_writer.request({"state": "first"})
    monotonic.advance(0.1)
    timer_writer.request({"state": "second"})

    assert timer_writer.tick() is False
    monotonic.advance(0.3)
    assert timer_writer.tick() is False

    monotonic.advance(0.3)
    assert timer_writer.tick() is True
    monotonic.advance(5)
    assert timer_writer.tick() is False

    assert timer_writer.write_count == 1
    assert read_file(timer_store) == {"state": "second"}


def test_request_after_write_waits_for_its_window(timer_writer, timer_store, monotonic):
    timer_writer.request({"n": 1})
    monotonic.advance(0.5)
    assert timer_writer.tick() is True

    monotonic.advance(0.1)
    timer_writer.request({"n": 2})
    monotonic.advance(0.2)
    assert timer_writer.tick() is False
    monotonic.advance(0.4)
    assert timer_writer.tick() is True
    assert timer_writer.write_count == 2
    assert read_file(timer_store) == {"n": 2}


def test_request_after_quiet_window_writes_without_tick(timer_writer, timer_store, monotonic):
    """Test that a transition minutes after the last one is persisted without a tick."""
    assert timer_writer.request({"n": 1}) is False
    monotonic.advance(120)
    assert timer_writer.request({"n": 2}) is True
    assert read_file(timer_store) == {"n": 2}
    assert not timer_writer.has_pending

    monotonic.advance(0.1)
    assert timer_writer.request({"n": 3}) is False
    assert timer_writer.has_pending
    assert timer_writer.write_count == 1


def test_flush_writes_pending_now(timer_writer, timer_store):
    timer_writer.request({"n": 1})
    assert timer_writer.flush() is True
    assert read_file(timer_store) == {"n": 1}
    assert timer_writer.flush() is False


def test_failed_write_is_retried(monotonic):
    """Test that a failed write keeps the payload pending."""
    store = Mock()
    store.save.side_effect = [OSError("disk full"), None]
    writer = DebouncedStateWriter(store, min_interval=0.5, clock=monotonic)

    writer.request({"n": 1})
    monotonic.advance(1)
    assert writer.tick() is False
    assert writer.has_pending
    assert writer.tick() is True
    assert not writer.has_pending
    assert store.save.call_count == 2


def test_atomic_write_leaves_no_temp_file(timer_store):
    timer_store.save({"timer": None})
    timer_store.save({"timer": {"id": "x"}})
    assert not timer_store.path.with_name(timer_store.path.name + ".tmp").exists()
    assert timer_store.load() == {"timer": {"id": "x"}}


def test_corrupt_or_missing_file_loads_as_none(timer_store):
    assert timer_store.load() is None
    timer_store.path.write_text("{not json", encoding="utf-8")
    assert timer_store.load() is None


def test_start_runs_with_pending_items(timer):
    state = timer.start(900, ["a", "b"], NOW)
    assert timer.status is TimerStatus.RUNNING
    assert state.is_active
    assert state.end_time == NOW + timedelta(seconds=900)
    assert state.associated_item_ids == ("a", "b")
    assert timer.remaining(NOW + timedelta(seconds=100)) == timedelta(seconds=800)


def test_tick_expires_at_end_time(timer):
    timer.start(900, ["a"], NOW)
    assert timer.tick(NOW + timedelta(seconds=899)) is False
    assert timer.status is TimerStatus.RUNNING
    assert timer.tick(NOW + timedelta(seconds=900)) is True
    assert timer.status is TimerStatus.EXPIRED
    assert timer.tick(NOW + timedelta(seconds=901)) is False


def test_snooze_keeps_items_and_correlation(timer):
    """Test that snoozing extends the end time and keeps the same timer."""
    started = timer.start(900, ["a"], NOW)
    timer.tick(NOW + timedelta(seconds=900))

    later = NOW + timedelta(seconds=950)
    snoozed = timer.snooze(300, later)
    assert timer.status is TimerStatus.SNOOZED
    assert snoozed.end_time == later + timedelta(seconds=300)
    assert snoozed.correlation_id == started.correlation_id
    assert snoozed.associated_item_ids == started.associated_item_ids


def test_snooze_idle_timer_is_refused(timer):
    assert timer.snooze(300, NOW) is None
    assert timer.status is TimerStatus.IDLE


def test_stop_is_idempotent(timer):
    timer.start(900, ["a"], NOW)
    assert timer.stop() is True
    assert timer.status is TimerStatus.STOPPED
    assert timer.state is None
    assert timer.stop() is False
    assert timer.status is TimerStatus.STOPPED


def test_dismiss_only_from_expired(timer):
    timer.start(900, ["a"], NOW)
    assert timer.dismiss() is False
    timer.tick(NOW + timedelta(hours=1))
    assert timer.dismiss() is True
    assert timer.status is TimerStatus.IDLE
    assert timer.state is None


def test_every_transition_requests_a_write(timer, timer_writer, timer_store, monotonic):
    """Test that a burst of transitions is persisted as its final state."""
    timer.start(900, ["a"], NOW)
    timer.snooze(300, NOW + timedelta(seconds=10))
    timer.stop()
    monotonic.advance(1)
    timer.tick(NOW + timedelta(seconds=20))

    assert timer_writer.write_count == 1
    assert read_file(timer_store) == {"status": "stopped", "timer": None}


def test_adopt_remote_running_timer(timer):
    remote = TimerState(True, NOW + timedelta(minutes=5), ("a",), "remote-1")
    assert timer.adopt(remote, NOW) is True
    assert timer.status is TimerStatus.RUNNING
    assert timer.state == remote
    assert timer.adopt(remote, NOW) is False


def test_adopt_inactive_or_expired_clears(timer):
    timer.start(900, ["a"], NOW)
    stale = TimerState(True, NOW - timedelta(minutes=1), ("a",), "other")
    assert timer.adopt(stale, NOW) is True
    assert timer.status is TimerStatus.IDLE

    timer.start(900, ["a"], NOW)
    assert timer.adopt(None, NOW) is True
    assert timer.state is None
    assert timer.adopt(None, NOW) is False


def test_adopt_keeps_local_expiry_of_same_timer(timer):
    """Test that the remote copy of a locally expired timer does not reset it."""
    state = timer.start(900, ["a"], NOW)
    later = NOW + timedelta(seconds=901)
    timer.tick(later)
    assert timer.adopt(state, later) is False
    assert timer.status is TimerStatus.EXPIRED


def test_clear_if_stale(timer):
    timer.start(900, ["a"], NOW)
    assert timer.clear_if_stale(NOW + timedelta(seconds=10)) is False
    assert timer.clear_if_stale(NOW + timedelta(seconds=900)) is True
    assert timer.state is None


def test_restore_from_payload(timer_writer):
    """Test that a persisted running timer past its end restores as expired."""
    original = TimerStateMachine(timer_writer)
    original.start(60, ["a"], NOW)
    payload = original.payload()

    restored = TimerStateMachine(timer_writer)
    restored.restore(payload, NOW + timedelta(seconds=30))
    assert restored.status is TimerStatus.RUNNING
    assert restored.state == original.state

    expired = TimerStateMachine(timer_writer)
    expired.restore(payload, NOW + timedelta(minutes=5))
    assert expired.status is TimerStatus.EXPIRED

    empty = TimerStateMachine(timer_writer)
    empty.restore({"status": "running", "timer": {"bad": True}}, NOW)
    assert empty.status is TimerStatus.IDLE


def test_transition_callback_errors_are_contained(timer_writer):
    callback = Mock(side_effect=RuntimeError("boom"))
    timer = TimerStateMachine(timer_writer, on_transition=callback)
    timer.start(900, ["a"], NOW)
    assert timer.status is TimerStatus.RUNNING
    callback.assert_called_once()


if __name__ == "__main__":
    pytest.main([__file__])
