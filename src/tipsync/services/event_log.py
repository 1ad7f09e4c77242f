"""Deduplication and merging of per-day completion events.

An item's log holds at most one entry per calendar day. Within one set the
latest entry of a day wins; when a local and a remote set disagree about a
day, the remote entry wins, since the remote store is the shared ground
truth and local entries are provisional until it confirms them.
"""
import logging
from datetime import date, tzinfo
from typing import Dict, Iterable, List, Optional, Set, Tuple

from tipsync.models.domain import ItemLog, LogEntry
from tipsync.utils.dt_utils import day_of

logger = logging.getLogger(__name__)


def identity(entry: LogEntry, tz: Optional[tzinfo] = None) -> Tuple[date, str]:
    """Deduplication identity of an entry: its day and actor."""
    return day_of(entry.timestamp, tz), entry.actor_id


def by_day(entries: Iterable[LogEntry], tz: Optional[tzinfo] = None) -> Dict[date, LogEntry]:
    """Collapse entries to one per day, keeping the latest (actor id breaks ties)."""
    days: Dict[date, LogEntry] = {}
    for entry in entries:
        day = day_of(entry.timestamp, tz)
        current = days.get(day)
        if current is None or (entry.timestamp, entry.actor_id) > (current.timestamp, current.actor_id):
            days[day] = entry
    return days


def _ordered(days: Dict[date, LogEntry]) -> List[LogEntry]:
    return [days[day] for day in sorted(days)]


def dedup_entries(entries: Iterable[LogEntry], tz: Optional[tzinfo] = None) -> List[LogEntry]:
    """Return entries with at most one per calendar day, oldest first."""
    return _ordered(by_day(entries, tz))


def dedup_log(log: ItemLog, tz: Optional[tzinfo] = None) -> ItemLog:
    """Deduplicate every item of a cycle log and prune empty items."""
    result: ItemLog = {}
    for item_id, entries in log.items():
        deduped = dedup_entries(entries, tz)
        if deduped:
            result[item_id] = deduped
    return result


def add_entry(entries: Iterable[LogEntry], candidate: LogEntry, tz: Optional[tzinfo] = None) -> List[LogEntry]:
    """Insert candidate, replacing any entry on the same day."""
    days = by_day(entries, tz)
    days[day_of(candidate.timestamp, tz)] = candidate
    return _ordered(days)


def remove_day(entries: Iterable[LogEntry], day: date, tz: Optional[tzinfo] = None) -> List[LogEntry]:
    """Remove the entries of one day. May return an empty list."""
    return [entry for entry in entries if day_of(entry.timestamp, tz) != day]


def has_entry_on(entries: Iterable[LogEntry], day: date, tz: Optional[tzinfo] = None) -> bool:
    return any(day_of(entry.timestamp, tz) == day for entry in entries)


def merge_event_sets(
    local: ItemLog,
    remote: ItemLog,
    removed: Iterable[Tuple[str, date]] = (),
    tz: Optional[tzinfo] = None,
) -> ItemLog:
    """Merge two cycle logs.

    The result holds the union of (item, day) keys of both sides minus the
    keys in ``removed``, with one entry per key. Where both sides have a key,
    the remote entry is kept.
    """
    tombstones: Set[Tuple[str, date]] = set(removed)
    merged: ItemLog = {}
    for item_id in set(local) | set(remote):
        days = by_day(local.get(item_id, []), tz)
        remote_days = by_day(remote.get(item_id, []), tz)
        for day, entry in remote_days.items():
            current = days.get(day)
            if current is not None and identity(current, tz) != identity(entry, tz):
                logger.info(f"Remote entry of {entry.actor_id} wins for item {item_id} on {day} over {current.actor_id}")
            days[day] = entry
        for day in [d for d in days if (item_id, d) in tombstones]:
            del days[day]
        if days:
            merged[item_id] = _ordered(days)
    return merged


def prune_before(log: ItemLog, day: date, tz: Optional[tzinfo] = None) -> ItemLog:
    """Drop entries dated strictly before day and prune empty items."""
    result: ItemLog = {}
    for item_id, entries in log.items():
        kept = [entry for entry in entries if day_of(entry.timestamp, tz) >= day]
        if kept:
            result[item_id] = kept
    return result
