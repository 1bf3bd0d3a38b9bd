"""Wall-clock arithmetic for the daily target.

Pure functions only: no I/O, no clock reads. Callers pass ``now``.
"""

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

_INTERVAL_RE = re.compile(r"^(\d+)([smhd])$")
_INTERVAL_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def _local_now(now: datetime, tz: Optional[tzinfo]) -> datetime:
    if now.tzinfo is None:
        # Naive input is local wall-clock time
        now = now.astimezone()
    return now.astimezone(tz) if tz is not None else now.astimezone()


def _wall_clock(day: date, hour: int, minute: int, tz: Optional[tzinfo]) -> datetime:
    """Build ``day hour:minute:00.000`` in the given (or system-local) zone."""
    naive = datetime.combine(day, time(hour, minute))
    if tz is not None:
        return naive.replace(tzinfo=tz)
    return naive.astimezone()


def next_occurrence(
    now: datetime,
    target_hour: int,
    target_minute: int,
    tz: Optional[tzinfo] = None,
) -> datetime:
    """Return the next instant at ``target_hour:target_minute`` local time.

    Today's target is used while it is still strictly in the future;
    otherwise the calendar day is advanced and the wall-clock time rebuilt,
    so DST transitions shift the instant rather than the local time.
    A ``now`` exactly on the target resolves to tomorrow, so a trigger
    re-arming at its own target time cannot fire twice in one day.
    """
    if not 0 <= target_hour <= 23:
        raise ValueError(f"target_hour must be in 0..23, got {target_hour}")
    if not 0 <= target_minute <= 59:
        raise ValueError(f"target_minute must be in 0..59, got {target_minute}")

    local_now = _local_now(now, tz)
    target = _wall_clock(local_now.date(), target_hour, target_minute, tz)
    if target.astimezone(timezone.utc) <= local_now.astimezone(timezone.utc):
        target = _wall_clock(
            local_now.date() + timedelta(days=1), target_hour, target_minute, tz
        )
    return target


def delay_to_next_occurrence(
    now: datetime,
    target_hour: int,
    target_minute: int,
    tz: Optional[tzinfo] = None,
) -> timedelta:
    """Delay from ``now`` until the next ``target_hour:target_minute``.

    Always positive and at most one local day long. Subtraction is done on
    UTC instants; same-zone aware subtraction in Python is wall-clock based.
    """
    target = next_occurrence(now, target_hour, target_minute, tz)
    return target.astimezone(timezone.utc) - _local_now(now, tz).astimezone(timezone.utc)


def parse_interval(interval_str: str) -> Optional[timedelta]:
    """Turn an ad-hoc run delay such as ``"2m"`` or ``"1h"`` into a timedelta.

    Returns None for anything that is not ``<count><s|m|h|d>``.
    """
    match = _INTERVAL_RE.match(interval_str.strip().lower())
    if not match:
        return None
    count, unit = match.groups()
    return timedelta(**{_INTERVAL_UNITS[unit]: int(count)})
