"""
Time-of-day window helpers.

Windows are local clock ranges like "09:00"-"18:00". Start is inclusive,
end is exclusive. A window whose end is at or before its start wraps past
midnight ("22:00"-"02:00").
"""

from datetime import datetime, time, timedelta, timezone
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

if TYPE_CHECKING:
    from ..scheduler.types import TimeWindow


def parse_clock(value: str) -> time:
    """Parse "HH:MM" (or "HH:MM:SS") into a time. Raises ValueError if malformed."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid clock time: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def window_contains(window: "TimeWindow", moment: time) -> bool:
    start = parse_clock(window.start_time)
    end = parse_clock(window.end_time)
    if start < end:
        return start <= moment < end
    # Wraps past midnight
    return moment >= start or moment < end


def active_window(windows: Iterable["TimeWindow"], now: datetime) -> Optional["TimeWindow"]:
    """First window (in configured order) that contains now's local clock time."""
    moment = now.time().replace(microsecond=0)
    for window in windows:
        if window_contains(window, moment):
            return window
    return None


def next_window_start(windows: Sequence["TimeWindow"], now: datetime) -> datetime:
    """Earliest window start strictly after now, rolling over to tomorrow if needed."""
    if not windows:
        raise ValueError("No time windows configured")

    candidates = []
    for window in windows:
        start = datetime.combine(now.date(), parse_clock(window.start_time), tzinfo=now.tzinfo)
        if start <= now:
            start = datetime.combine(
                now.date() + timedelta(days=1), parse_clock(window.start_time), tzinfo=now.tzinfo
            )
        candidates.append(start)
    return min(candidates, key=_to_utc)


def seconds_until_next_window(windows: Sequence["TimeWindow"], now: datetime) -> float:
    """Delay from now to the next window start, exact across DST changes."""
    target = next_window_start(windows, now)
    return (_to_utc(target) - _to_utc(now)).total_seconds()


def _to_utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc)
