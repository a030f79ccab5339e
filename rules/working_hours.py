"""
Working-hours evaluation for a tenant's weekly schedule.

The schedule holds wall-clock "HH:MM" strings with no zone attached.
Unless a timezone is configured the comparison uses the server's local
clock, matching how tenants have always configured their hours.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from models.schemas import AutomationSettings, DaySchedule

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def local_now(tz: Optional[str] = None, now: Optional[datetime] = None) -> datetime:
    """Current instant as tenant wall-clock time."""
    if tz:
        zone = ZoneInfo(tz)
        if now is None:
            return datetime.now(zone)
        if now.tzinfo is None:
            return now.replace(tzinfo=zone)
        return now.astimezone(zone)
    if now is None:
        return datetime.now()
    if now.tzinfo is not None:
        return now.astimezone()
    return now


def schedule_for(settings: AutomationSettings, weekday: str) -> Optional[DaySchedule]:
    for day in settings.working_hours:
        if day.day.strip().lower() == weekday.lower():
            return day
    return None


def is_working_hours(
    settings: AutomationSettings,
    now: Optional[datetime] = None,
    tz: Optional[str] = None,
) -> bool:
    """
    True when ``now`` falls inside today's open window.

    Holiday mode always closes. A missing or closed day closes. The window
    is inclusive on both ends and never wraps past midnight.
    """
    if settings.holiday_mode:
        return False

    current = local_now(tz, now)
    today = schedule_for(settings, WEEKDAYS[current.weekday()])
    if today is None or not today.open:
        return False

    hhmm = current.strftime("%H:%M")
    return today.start_time <= hhmm <= today.end_time
