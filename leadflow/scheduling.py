"""Contact time windows and smart retry slots.

Windows are written in local wall-clock time (``Europe/Madrid`` unless
configured otherwise); every datetime going in or out of this module is UTC.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Sequence
from zoneinfo import ZoneInfo

from .constants import DEFAULT_TIMEZONE
from .contracts import TimeWindow

logger = logging.getLogger(__name__)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

MORNING_SLOT = time(9, 0)
EVENING_SLOT = time(16, 0)

# How far ahead a window start is searched for.
WINDOW_SEARCH_DAYS = 8


def get_timezone(name: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    return ZoneInfo(name)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


def _local_to_utc(day: datetime, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day.date(), at, tzinfo=tz).astimezone(timezone.utc)


def is_within_windows(moment: datetime, windows: Sequence[TimeWindow], tz: ZoneInfo) -> bool:
    local = moment.astimezone(tz)
    day = WEEKDAYS[local.weekday()]
    clock = local.strftime("%H:%M")
    return any(day in w.days and w.start <= clock <= w.end for w in windows)


def enforce_time_windows(
    moment: datetime, windows: Sequence[TimeWindow], tz: ZoneInfo
) -> datetime:
    """Return ``moment`` if it falls in a window, else the next window start."""
    if not windows or is_within_windows(moment, windows, tz):
        return moment

    local = moment.astimezone(tz)
    best: datetime | None = None
    for offset in range(WINDOW_SEARCH_DAYS):
        day = local + timedelta(days=offset)
        name = WEEKDAYS[day.weekday()]
        for window in windows:
            if name not in window.days:
                continue
            slot = _local_to_utc(day, _parse_hhmm(window.start), tz)
            if slot < moment:
                continue
            if best is None or slot < best:
                best = slot
        if best is not None:
            return best

    logger.warning(f"No time window opens within {WINDOW_SEARCH_DAYS} days of {moment}")
    return moment + timedelta(days=WINDOW_SEARCH_DAYS)


def next_smart_slot(now: datetime, tz: ZoneInfo) -> datetime:
    """Alternate call attempts between a morning and an evening slot.

    Before 09:00 local the next slot is 09:00 today, before 16:00 it is
    16:00 today, and from 16:00 on it is 09:00 tomorrow.
    """
    local = now.astimezone(tz)
    if local.time() < MORNING_SLOT:
        return _local_to_utc(local, MORNING_SLOT, tz)
    if local.hour < EVENING_SLOT.hour:
        return _local_to_utc(local, EVENING_SLOT, tz)
    return _local_to_utc(local + timedelta(days=1), MORNING_SLOT, tz)


_DAY_NUMBERS = {
    "monday": 1, "mon": 1,
    "tuesday": 2, "tue": 2,
    "wednesday": 3, "wed": 3,
    "thursday": 4, "thu": 4,
    "friday": 5, "fri": 5,
    "saturday": 6, "sat": 6,
    "sunday": 7, "sun": 7,
}


def day_number(name: str | None) -> int:
    """ISO weekday for a day name; unknown names map to Monday."""
    return _DAY_NUMBERS.get(str(name or "").lower(), 1)
