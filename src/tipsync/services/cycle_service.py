"""Resolution of the current cycle and of scheduled doses."""
import logging
from datetime import date, tzinfo
from typing import Iterable, Optional

from tipsync.models.domain import Cycle, Item
from tipsync.utils.dt_utils import day_of

logger = logging.getLogger(__name__)


def current_cycle(cycles: Iterable[Cycle], today: date, tz: Optional[tzinfo] = None) -> Optional[Cycle]:
    """Get the cycle a day belongs to.

    A day belongs to a cycle when it falls on or after the cycle's start and
    before the next cycle's start; the last cycle extends indefinitely. A day
    before every start belongs to the earliest cycle. Returns None only when
    there are no cycles.
    """
    ordered = sorted(cycles, key=lambda c: (day_of(c.start_date, tz), c.number))
    if not ordered:
        return None

    for index, cycle in enumerate(ordered):
        start = day_of(cycle.start_date, tz)
        is_last = index == len(ordered) - 1
        if today >= start and (is_last or today < day_of(ordered[index + 1].start_date, tz)):
            return cycle

    return ordered[0]


def latest_cycle(cycles: Iterable[Cycle]) -> Optional[Cycle]:
    """Get the cycle with the latest start."""
    ordered = sorted(cycles, key=lambda c: (c.start_date, c.number))
    return ordered[-1] if ordered else None


def week_number(cycle: Cycle, day: date, tz: Optional[tzinfo] = None) -> int:
    """Get the 1-based week of a cycle a day falls in."""
    days = (day - day_of(cycle.start_date, tz)).days
    return max(days // 7 + 1, 1)


def dose_for(item: Item, cycle: Cycle, day: date, tz: Optional[tzinfo] = None) -> Optional[float]:
    """Get the dose of an item scheduled for a day."""
    return item.dose_for_week(week_number(cycle, day, tz))
