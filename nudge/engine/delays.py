"""
Nudge - Delay & Date Helpers
The edit form speaks relative delays (days after the previous message),
storage speaks absolute delays (days after the original email).
Every function takes "now" and the zone explicitly.
"""
import re
from datetime import datetime, time, timedelta, timezone
from typing import Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

SEND_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
ONE_DAY = timedelta(days=1)


def to_absolute(relative: Sequence[int]) -> list[int]:
    """Running sum: absolute[i] = absolute[i-1] + relative[i]."""
    absolute = []
    total = 0
    for days in relative:
        total += days
        absolute.append(total)
    return absolute


def to_relative(absolute: Sequence[int]) -> list[int]:
    """Pairwise differences: relative[i] = absolute[i] - absolute[i-1]."""
    relative = []
    previous = 0
    for days in absolute:
        relative.append(days - previous)
        previous = days
    return relative


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are UTC throughout the app
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize any datetime to the naive-UTC form the database stores."""
    return _as_utc(value).replace(tzinfo=None)


def days_elapsed(reference: datetime, now: datetime) -> int:
    """Whole days between two instants, floored, never negative."""
    delta = _as_utc(now) - _as_utc(reference)
    if delta <= timedelta(0):
        return 0
    return delta // ONE_DAY


def min_first_delay(original_sent_at: datetime, now: datetime) -> int:
    """Smallest delay the first follow-up may use: strictly after today and after the original."""
    return max(1, days_elapsed(original_sent_at, now) + 1)


def parse_send_time(value: str) -> Optional[time]:
    """Parse a strict "HH:MM" wall-clock time. Returns None when malformed."""
    match = SEND_TIME_PATTERN.match(value or "")
    if not match:
        return None
    return time(int(match.group(1)), int(match.group(2)))


def resolve_zone(name: str) -> ZoneInfo:
    """Look up an IANA zone. Raises ValueError for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown time zone: {name}") from e


def absolute_send_instant(
    original_sent_at: datetime,
    send_after_days: int,
    send_time: str,
    tz: str,
) -> datetime:
    """
    The original email's calendar date in `tz`, plus send_after_days,
    at send_time in `tz`. Returned as naive UTC.

    days_elapsed counts 24-hour periods while this counts calendar days, so
    an early send_time on the first allowed day can already be in the past
    when the sequence is created. The sweep then sends it on its next pass.
    """
    wall_clock = parse_send_time(send_time)
    if wall_clock is None:
        raise ValueError(f"Invalid send time: {send_time!r}")
    zone = resolve_zone(tz)

    local_date = _as_utc(original_sent_at).astimezone(zone).date()
    target_date = local_date + timedelta(days=send_after_days)
    local_instant = datetime.combine(target_date, wall_clock, tzinfo=zone)
    return local_instant.astimezone(timezone.utc).replace(tzinfo=None)
