"""Paths of the room's sub-trees in the remote store."""
from typing import List

CYCLES = "cycles"
UNITS = "units"
CONSUMPTION_LOG = "consumptionLog"
TIMER = "treatmentTimer"
CATEGORY_COLLAPSED = "categoryCollapsed"
GROUP_COLLAPSED = "groupCollapsed"

# Sub-trees the engine subscribes to
SUBSCRIBED_PATHS = (
    CYCLES,
    UNITS,
    CONSUMPTION_LOG,
    TIMER,
    CATEGORY_COLLAPSED,
    GROUP_COLLAPSED,
)


def join(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p)


def split(path: str) -> List[str]:
    return [p for p in path.split("/") if p]


def overlaps(a: str, b: str) -> bool:
    """Check whether one path contains the other."""
    pa, pb = split(a), split(b)
    n = min(len(pa), len(pb))
    return pa[:n] == pb[:n]


def cycle_path(cycle_id: str) -> str:
    return join(CYCLES, cycle_id)


def item_path(cycle_id: str, item_id: str) -> str:
    return join(CYCLES, cycle_id, "items", item_id)


def grouped_item_path(cycle_id: str, group_id: str) -> str:
    return join(CYCLES, cycle_id, "groupedItems", group_id)


def unit_path(unit_id: str) -> str:
    return join(UNITS, unit_id)


def cycle_log_path(cycle_id: str) -> str:
    return join(CONSUMPTION_LOG, cycle_id)


def event_log_path(cycle_id: str, item_id: str) -> str:
    return join(CONSUMPTION_LOG, cycle_id, item_id)


def category_flag_path(category: str) -> str:
    return join(CATEGORY_COLLAPSED, category)


def group_flag_path(group_id: str) -> str:
    return join(GROUP_COLLAPSED, group_id)
