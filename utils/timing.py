"""
Due-time arithmetic for ``wait`` steps.

    compute_due_at(now, minutes)                      → now + minutes
    compute_due_at(now, minutes, "10:00", "Asia/Tokyo")
        → the local date of (now + minutes), pinned to 10:00 local time

Example: 2026-01-15T03:00Z + 1440 min at "10:00" JST → 2026-01-16T01:00Z.
"""
from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from core.errors import ParameterError

_SEND_TIME = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_send_time(value: str) -> time:
    match = _SEND_TIME.match(value.strip()) if value else None
    if not match:
        raise ParameterError(f"invalid send_time={value!r} (expected HH:MM)")
    return time(int(match.group(1)), int(match.group(2)))


def compute_due_at(
    now: datetime,
    minutes: int,
    send_time: Optional[str] = None,
    tz: str = "UTC",
) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    due = now + timedelta(minutes=minutes)
    if not send_time:
        return due

    wall = parse_send_time(send_time)
    zone = ZoneInfo(tz)
    local_date = due.astimezone(zone).date()
    pinned = datetime.combine(local_date, wall, tzinfo=zone)
    return pinned.astimezone(timezone.utc)
