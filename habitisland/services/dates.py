"""Calendar-day helpers.

Every streak and decay decision works on *logical days*: the local calendar
date in the user's timezone, shifted back by the grace period so that a
completion shortly after midnight still counts for the previous day.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from typing import Optional, Tuple


@lru_cache(maxsize=32)
def get_tz(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    from zoneinfo import ZoneInfo
    return ZoneInfo(name)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive values (SQLite drops tzinfo) are taken to be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    dt = ensure_utc(dt)
    return dt.isoformat() if dt else None


def parse_timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def logical_day(ts: datetime, tz_name: str = "UTC", grace_minutes: int = 0) -> date:
    local = ensure_utc(ts).astimezone(get_tz(tz_name))
    return (local - timedelta(minutes=grace_minutes)).date()


def day_key(d: date) -> str:
    return d.isoformat()


def parse_day(key: str) -> date:
    return date.fromisoformat(key)


def is_within_grace_period(ts: datetime, tz_name: str = "UTC", grace_minutes: int = 0) -> bool:
    if grace_minutes <= 0:
        return False
    local = ensure_utc(ts).astimezone(get_tz(tz_name))
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight <= local < midnight + timedelta(minutes=grace_minutes)


def is_same_day(a: date, b: date) -> bool:
    return a == b


def is_consecutive_day(earlier: date, later: date) -> bool:
    return (later - earlier).days == 1


def days_between(earlier: date, later: date) -> int:
    return (later - earlier).days


def week_start(d: date) -> date:
    return d - timedelta(days=d.weekday())


def month_start(d: date) -> date:
    return d.replace(day=1)


def day_bounds_utc(d: date, tz_name: str = "UTC", grace_minutes: int = 0) -> Tuple[datetime, datetime]:
    """UTC [start, end) of a logical day."""
    tz = get_tz(tz_name)
    start = datetime.combine(d, time.min, tzinfo=tz) + timedelta(minutes=grace_minutes)
    end = datetime.combine(d + timedelta(days=1), time.min, tzinfo=tz) + timedelta(minutes=grace_minutes)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
