"""Reporting-week arithmetic shared by the scheduler and the log handlers."""
from __future__ import annotations

import math
from datetime import datetime, timedelta

WEEK = timedelta(days=7)


def current_week(now: datetime) -> int:
    """
    Reporting week of the year: ceil(time since Jan 1 00:00 / 7 days).

    Jan 1 00:00:01 is week 1, any time on Jan 8 after midnight is week 2.
    """
    start_of_year = now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return math.ceil((now - start_of_year) / WEEK)


def reporting_deadline(now: datetime) -> datetime:
    """Midnight of the most recent Monday (today, if today is Monday)."""
    monday = now - timedelta(days=now.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


def format_deadline(deadline: datetime) -> str:
    """Human form used in reminder emails, e.g. 'Mon Jan 01 2024'."""
    return deadline.strftime("%a %b %d %Y")


def next_weekly_run(now: datetime, weekday: int = 0, hour: int = 9) -> datetime:
    """The next weekday/hour strictly after now (weekday: Monday=0)."""
    days_ahead = (weekday - now.weekday()) % 7
    candidate = (now + timedelta(days=days_ahead)).replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += WEEK
    return candidate
