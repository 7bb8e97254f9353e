"""
Clinic-local calendar helpers.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo


def local_today(tz_name: str, now: Optional[datetime] = None) -> str:
    tz = ZoneInfo(tz_name)
    current = now.astimezone(tz) if now else datetime.now(tz)
    return current.date().isoformat()


def day_window(day: str, tz_name: str) -> tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of ``day`` in the clinic's timezone."""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(date.fromisoformat(day), time.min, tzinfo=tz)
    return start, start + timedelta(days=1)
