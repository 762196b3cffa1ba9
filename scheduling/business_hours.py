"""
Business-hours clock — maps a moment to the next moment a message may go out.

Pure functions of (moment, calendar); no clock reads, no side effects.

    next_business_moment(Mon 10:00, Mon-Fri 9-17)  → Mon 10:00
    next_business_moment(Mon 07:30, Mon-Fri 9-17)  → Mon 09:00
    next_business_moment(Fri 18:30, Mon-Fri 9-17)  → Mon 09:00

Windows are half-open: a moment equal to the close time is outside.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from core.errors import NoBusinessHoursConfigured
from models.schemas import DayHours, WeeklyHours

# Today plus one full week always reaches an enabled day if there is one
_MAX_DAYS_SCANNED = 8


def _to_local(moment: datetime, tz: ZoneInfo) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def _from_local(local: datetime, original: datetime) -> datetime:
    if original.tzinfo is None:
        return local.replace(tzinfo=None)
    return local.astimezone(original.tzinfo)


def _window(day: date, hours: DayHours, tz: ZoneInfo) -> tuple[datetime, datetime]:
    return (
        datetime.combine(day, hours.open_time, tzinfo=tz),
        datetime.combine(day, hours.close_time, tzinfo=tz),
    )


def next_business_moment(moment: datetime, calendar: WeeklyHours) -> datetime:
    """
    Return `moment` if it falls inside an enabled window, otherwise the
    opening time of the next enabled window.

    Aware moments are evaluated in the calendar's timezone and returned in
    their own timezone; naive moments are read as calendar-local wall time
    and returned naive.

    Raises NoBusinessHoursConfigured if no weekday is enabled.
    """
    if not calendar.has_open_day:
        raise NoBusinessHoursConfigured(calendar.timezone)

    tz = ZoneInfo(calendar.timezone)
    local = _to_local(moment, tz)

    for offset in range(_MAX_DAYS_SCANNED):
        day = local.date() + timedelta(days=offset)
        hours = calendar.for_weekday(day.weekday())
        if hours is None:
            continue
        opens, closes = _window(day, hours, tz)
        if offset == 0:
            if opens <= local < closes:
                return moment
            if local < opens:
                return _from_local(opens, moment)
            continue
        return _from_local(opens, moment)

    raise NoBusinessHoursConfigured(calendar.timezone)


def is_within_business_hours(moment: datetime, calendar: WeeklyHours) -> bool:
    """True if a message could be sent at `moment` without being deferred."""
    if not calendar.has_open_day:
        return False
    tz = ZoneInfo(calendar.timezone)
    local = _to_local(moment, tz)
    hours = calendar.for_weekday(local.weekday())
    if hours is None:
        return False
    opens, closes = _window(local.date(), hours, tz)
    return opens <= local < closes
