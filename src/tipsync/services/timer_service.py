"""Shared countdown timer: lifecycle and debounced persistence."""
import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from tipsync import monitoring
from tipsync.models.domain import TimerState, decode_timer
from tipsync.services.local_store import TimerStateStore
from tipsync.utils.dt_utils import ensure_aware, now_utc

logger = logging.getLogger(__name__)


class TimerStatus(Enum):
    """Lifecycle states of the timer."""
    IDLE = "idle"
    RUNNING = "running"
    EXPIRED = "expired"
    SNOOZED = "snoozed"
    STOPPED = "stopped"


class DebouncedStateWriter:
    """Collapses bursts of timer state writes into one write of the final state.

    A request replaces any pending payload. The pending payload is written by
    :meth:`tick` once no request has arrived for ``min_interval`` seconds and
    the previous successful write is at least that old. A request that follows
    such a quiet window is written at once, so the state is persisted even
    when nothing ticks. :meth:`flush` writes unconditionally.
    """

    def __init__(
        self,
        store: TimerStateStore,
        min_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.min_interval = min_interval
        self.clock = clock
        self.write_count = 0
        self.last_write_at: Optional[float] = None
        self._pending: Optional[Dict[str, Any]] = None
        self._requested_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def request(self, payload: Dict[str, Any]) -> bool:
        """Replace the pending payload. Returns True if it was written at once."""
        monitoring.timer_write_requests.inc()
        with self._lock:
            quiet = self._requested_at is not None and self._window_passed(self._requested_at)
            self._pending = payload
            self._requested_at = self.clock()
            if quiet and self._last_write_passed():
                return self._write()
            return False

    def tick(self) -> bool:
        """Write the pending payload if the debounce window has passed."""
        with self._lock:
            if self._pending is None:
                return False
            if not self._window_passed(self._requested_at) or not self._last_write_passed():
                return False
            return self._write()

    def _window_passed(self, since: float) -> bool:
        return self.clock() - since >= self.min_interval

    def _last_write_passed(self) -> bool:
        return self.last_write_at is None or self._window_passed(self.last_write_at)

    def flush(self) -> bool:
        """Write the pending payload now."""
        with self._lock:
            if self._pending is None:
                return False
            return self._write()

    def _write(self) -> bool:
        try:
            self.store.save(self._pending)
        except OSError as e:
            # Kept pending; the next tick retries
            logger.error(f"Error writing timer state to {self.store.path}: {e}")
            monitoring.cache_write_errors.labels(key="timer_state").inc()
            return False
        self._pending = None
        self.last_write_at = self.clock()
        self.write_count += 1
        monitoring.timer_state_writes.inc()
        return True


TransitionCallback = Callable[[TimerStatus, Optional[TimerState]], None]


class TimerStateMachine:
    """Idle -> Running -> {Expired, Snoozed, Stopped} -> Idle.

    The machine only flips state and persists it through the debounced
    writer; alerts and publishing are left to the caller.
    """

    def __init__(self, writer: DebouncedStateWriter, on_transition: Optional[TransitionCallback] = None):
        self.writer = writer
        self.on_transition = on_transition
        self._status = TimerStatus.IDLE
        self._state: Optional[TimerState] = None
        self._lock = threading.RLock()

    @property
    def status(self) -> TimerStatus:
        return self._status

    @property
    def state(self) -> Optional[TimerState]:
        return self._state

    @property
    def is_idle(self) -> bool:
        return self._status in (TimerStatus.IDLE, TimerStatus.STOPPED)

    def remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Time left before expiry, or None when no timer is counting down."""
        if self._status not in (TimerStatus.RUNNING, TimerStatus.SNOOZED):
            return None
        return max(self._state.end_time - ensure_aware(now or now_utc()), timedelta(0))

    def start(self, duration: float, item_ids: Iterable[str], now: Optional[datetime] = None) -> TimerState:
        """Start a new countdown for the given pending items."""
        now = ensure_aware(now or now_utc())
        with self._lock:
            state = TimerState(
                is_active=True,
                end_time=(now + timedelta(seconds=duration)).replace(microsecond=0),
                associated_item_ids=tuple(item_ids),
            )
            self._transition(TimerStatus.RUNNING, state)
            logger.info(f"Timer {state.correlation_id} started, ends at {state.end_time.isoformat()}")
            return state

    def stop(self) -> bool:
        """Cancel the timer. Stopping an idle timer is a no-op."""
        with self._lock:
            if self.is_idle:
                return False
            logger.info(f"Timer {self._state.correlation_id} stopped")
            self._transition(TimerStatus.STOPPED, None)
            return True

    def tick(self, now: Optional[datetime] = None) -> bool:
        """Flip a running timer to expired once its end time passes.

        Also gives the debounced writer its chance to write. Returns True on
        the tick that expires the timer.
        """
        now = ensure_aware(now or now_utc())
        expired = False
        with self._lock:
            if self._status in (TimerStatus.RUNNING, TimerStatus.SNOOZED) and now >= self._state.end_time:
                logger.info(f"Timer {self._state.correlation_id} expired")
                self._transition(TimerStatus.EXPIRED, self._state)
                expired = True
        self.writer.tick()
        return expired

    def snooze(self, duration: float, now: Optional[datetime] = None) -> Optional[TimerState]:
        """Extend an expired or running timer, keeping its items and correlation id."""
        now = ensure_aware(now or now_utc())
        with self._lock:
            if self._status not in (TimerStatus.RUNNING, TimerStatus.EXPIRED, TimerStatus.SNOOZED):
                logger.warning(f"Cannot snooze timer in state {self._status.value}")
                return None
            end_time = (now + timedelta(seconds=duration)).replace(microsecond=0)
            state = replace(self._state, is_active=True, end_time=end_time)
            self._transition(TimerStatus.SNOOZED, state)
            logger.info(f"Timer {state.correlation_id} snoozed until {state.end_time.isoformat()}")
            return state

    def dismiss(self) -> bool:
        """Acknowledge an expired timer."""
        with self._lock:
            if self._status is not TimerStatus.EXPIRED:
                return False
            self._transition(TimerStatus.IDLE, None)
            return True

    def adopt(self, remote: Optional[TimerState], now: Optional[datetime] = None) -> bool:
        """Take over the timer published by the room. Returns True if anything changed."""
        now = ensure_aware(now or now_utc())
        with self._lock:
            same = remote is not None and self._state is not None and remote.correlation_id == self._state.correlation_id
            if remote is None or not remote.is_active or remote.end_time <= now:
                if self._status is TimerStatus.EXPIRED and same:
                    return False
                if self._state is None:
                    return False
                self._transition(TimerStatus.IDLE, None)
                return True

            if same and remote == self._state and self._status in (TimerStatus.RUNNING, TimerStatus.SNOOZED):
                return False
            status = TimerStatus.SNOOZED if same and self._status is TimerStatus.SNOOZED else TimerStatus.RUNNING
            self._transition(status, remote)
            return True

    def clear_if_stale(self, now: Optional[datetime] = None) -> bool:
        """Drop a timer that is inactive or past its end time."""
        now = ensure_aware(now or now_utc())
        with self._lock:
            if self._state is None:
                return False
            if self._state.is_active and self._state.end_time > now:
                return False
            self._transition(TimerStatus.IDLE, None)
            return True

    def payload(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "timer": self._state.to_dict() if self._state else None,
        }

    def restore(self, payload: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> None:
        """Load a persisted payload without writing it back."""
        if not payload:
            return
        now = ensure_aware(now or now_utc())
        decoded = decode_timer(payload.get("timer"))
        try:
            status = TimerStatus(payload.get("status"))
        except ValueError:
            status = TimerStatus.IDLE
        with self._lock:
            if not decoded.ok or status in (TimerStatus.IDLE, TimerStatus.STOPPED):
                self._status, self._state = TimerStatus.IDLE, None
                return
            state = decoded.value
            if status in (TimerStatus.RUNNING, TimerStatus.SNOOZED) and state.end_time <= now:
                status = TimerStatus.EXPIRED
            self._status, self._state = status, state
            logger.info(f"Restored timer {state.correlation_id} ({status.value})")

    def _transition(self, status: TimerStatus, state: Optional[TimerState]) -> None:
        self._status = status
        self._state = state
        self.writer.request(self.payload())
        if self.on_transition:
            try:
                self.on_transition(status, state)
            except Exception as e:
                logger.error(f"Error in timer transition callback: {e}")
