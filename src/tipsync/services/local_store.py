"""Durable local cache of the room state."""
import json
import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tipsync import monitoring
from tipsync.models.base import SessionLocal
from tipsync.models.domain import (
    RoomState,
    decode_cycle,
    decode_grouped_item,
    decode_item,
    decode_log_entry,
    decode_unit,
    entries_to_wire,
)
from tipsync.models.models import CacheEntry
from tipsync.utils.dt_utils import parse_day

logger = logging.getLogger(__name__)

CYCLES_KEY = "cachedCycles"
ITEMS_KEY = "cachedCycleItems"
GROUPED_ITEMS_KEY = "cachedGroupedItems"
EVENTS_KEY = "cachedConsumptionLog"
UNITS_KEY = "cachedUnits"
CATEGORY_COLLAPSED_KEY = "categoryCollapsed"
GROUP_COLLAPSED_KEY = "groupCollapsed"
LAST_RESET_KEY = "lastResetDate"


def state_to_blobs(state: RoomState) -> Dict[str, Any]:
    """Serialize the cached parts of a room state, one blob per cache key."""
    return {
        CYCLES_KEY: {cid: cycle.to_dict() for cid, cycle in state.cycles.items()},
        ITEMS_KEY: {
            cid: {iid: item.to_dict() for iid, item in items.items()}
            for cid, items in state.items.items()
        },
        GROUPED_ITEMS_KEY: {
            cid: {gid: group.to_dict() for gid, group in groups.items()}
            for cid, groups in state.grouped_items.items()
        },
        EVENTS_KEY: {
            cid: {iid: entries_to_wire(entries) for iid, entries in log.items()}
            for cid, log in state.events.items()
        },
        UNITS_KEY: {uid: unit.to_dict() for uid, unit in state.units.items()},
        CATEGORY_COLLAPSED_KEY: dict(state.category_collapsed),
        GROUP_COLLAPSED_KEY: dict(state.group_collapsed),
    }


def _nested(blob: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(blob, dict):
        return {}
    return {key: value for key, value in blob.items() if isinstance(value, dict)}


def blobs_to_state(blobs: Dict[str, Any]) -> RoomState:
    """Rebuild a room state from cache blobs, skipping records that fail to decode."""
    state = RoomState()

    for cid, raw in _nested(blobs.get(CYCLES_KEY)).items():
        decoded = decode_cycle(cid, raw)
        if decoded.ok:
            state.cycles[cid] = decoded.value
        else:
            logger.warning(f"Skipping cached {decoded.error}")

    for cid, records in _nested(blobs.get(ITEMS_KEY)).items():
        for iid, raw in records.items():
            decoded = decode_item(iid, raw)
            if decoded.ok:
                state.items.setdefault(cid, {})[iid] = decoded.value
            else:
                logger.warning(f"Skipping cached {decoded.error}")

    for cid, records in _nested(blobs.get(GROUPED_ITEMS_KEY)).items():
        for gid, raw in records.items():
            decoded = decode_grouped_item(gid, raw)
            if decoded.ok:
                state.grouped_items.setdefault(cid, {})[gid] = decoded.value
            else:
                logger.warning(f"Skipping cached {decoded.error}")

    for cid, log in _nested(blobs.get(EVENTS_KEY)).items():
        for iid, raw_entries in log.items():
            if not isinstance(raw_entries, list):
                continue
            entries = [d.value for d in map(decode_log_entry, raw_entries) if d.ok]
            if entries:
                state.events.setdefault(cid, {})[iid] = entries

    units = blobs.get(UNITS_KEY)
    if isinstance(units, dict):
        for uid, raw in units.items():
            decoded = decode_unit(uid, raw)
            if decoded.ok:
                state.units[uid] = decoded.value

    for key, target in (
        (CATEGORY_COLLAPSED_KEY, state.category_collapsed),
        (GROUP_COLLAPSED_KEY, state.group_collapsed),
    ):
        flags = blobs.get(key)
        if isinstance(flags, dict):
            target.update({k: v for k, v in flags.items() if isinstance(v, bool)})

    state.last_reset_date = parse_day(blobs.get(LAST_RESET_KEY))
    return state


class LocalStore:
    """Key/value cache of JSON blobs in the cache_entries table.

    Write failures are logged and counted, never raised: the in-memory state
    is still correct for the session, only durability is degraded.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def put(self, key: str, value: Any) -> bool:
        """Store one blob. Returns False if the write failed."""
        return self.put_many({key: value})

    def put_many(self, blobs: Dict[str, Any]) -> bool:
        """Store several blobs in one transaction."""
        session = self.session_factory()
        try:
            for key, value in blobs.items():
                session.merge(CacheEntry(key=key, payload=json.dumps(value, sort_keys=True)))
            session.commit()
            return True
        except (SQLAlchemyError, TypeError, ValueError) as e:
            session.rollback()
            logger.error(f"Error writing cache entries {sorted(blobs)}: {e}")
            for key in blobs:
                monitoring.cache_write_errors.labels(key=key).inc()
            return False
        finally:
            session.close()

    def get(self, key: str) -> Any:
        """Load one blob, or None if it is missing or unreadable."""
        return self.get_many([key]).get(key)

    def get_many(self, keys) -> Dict[str, Any]:
        session = self.session_factory()
        try:
            rows = session.query(CacheEntry).filter(CacheEntry.key.in_(list(keys))).all()
        except SQLAlchemyError as e:
            logger.error(f"Error reading cache entries: {e}")
            return {}
        finally:
            session.close()

        blobs: Dict[str, Any] = {}
        for row in rows:
            try:
                blobs[row.key] = json.loads(row.payload)
            except ValueError as e:
                logger.warning(f"Ignoring corrupt cache entry {row.key}: {e}")
        return blobs

    def save_state(self, state: RoomState) -> bool:
        """Persist the cached parts of the room state."""
        return self.put_many(state_to_blobs(state))

    def load_state(self) -> RoomState:
        """Load the cached room state; an empty cache gives an empty state."""
        keys = [
            CYCLES_KEY,
            ITEMS_KEY,
            GROUPED_ITEMS_KEY,
            EVENTS_KEY,
            UNITS_KEY,
            CATEGORY_COLLAPSED_KEY,
            GROUP_COLLAPSED_KEY,
            LAST_RESET_KEY,
        ]
        return blobs_to_state(self.get_many(keys))

    def save_last_reset_date(self, day: date) -> bool:
        return self.put(LAST_RESET_KEY, day.isoformat())

    def load_last_reset_date(self) -> Optional[date]:
        return parse_day(self.get(LAST_RESET_KEY))


class TimerStateStore:
    """Single JSON file holding the timer state, replaced atomically."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def save(self, payload: Dict[str, Any]) -> None:
        """Write the payload to a temp file and rename it over the previous one.

        Raises OSError on failure; the previous file is left intact.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def load(self) -> Optional[Dict[str, Any]]:
        """Read the payload, or None if the file is missing or corrupt."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable timer state {self.path}: {e}")
            return None
        return payload if isinstance(payload, dict) else None
