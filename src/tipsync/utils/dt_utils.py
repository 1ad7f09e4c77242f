"""Date and time helpers.

All timestamps handled by the engine are timezone-aware. Calendar days are
computed in a configurable time zone (the system local zone by default),
because "the same day" means the user's day, not the UTC day.

Functions:
    - resolve_timezone: Turn a zone name into a tzinfo (None = system local)
    - now_utc: Current aware datetime in UTC
    - day_of: Calendar day of a timestamp in a time zone
    - today: Today's calendar day in a time zone
    - to_iso: Wire format for timestamps (ISO 8601, UTC, second precision)
    - parse_iso: Parse the wire format, tolerating offsets and fractions
"""
from datetime import UTC, date, datetime, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """Return the ZoneInfo for name, or None for the system local zone."""
    if not name:
        return None
    return ZoneInfo(name)


def now_utc() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_aware(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts


def day_of(ts: datetime, tz: Optional[tzinfo] = None) -> date:
    """Get the calendar day a timestamp falls on in the given time zone."""
    return ensure_aware(ts).astimezone(tz).date()


def today(tz: Optional[tzinfo] = None, now: Optional[datetime] = None) -> date:
    """Get today's calendar day in the given time zone."""
    return day_of(now or now_utc(), tz)


def to_iso(ts: datetime) -> str:
    """Format a timestamp for the remote store."""
    return ensure_aware(ts).astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(value: object) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp, returning None if it is not one."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return ensure_aware(parsed)


def parse_day(value: object) -> Optional[date]:
    """Parse a YYYY-MM-DD day, returning None if it is not one."""
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None
