from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _zone(tz: str | ZoneInfo) -> ZoneInfo:
    return tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)


def local_time_after_days(
    origin: datetime,
    days: int,
    *,
    hour: int,
    minute: int = 0,
    tz: str | ZoneInfo,
    business_days: bool = True,
) -> datetime:
    """Return the UTC instant ``days`` (business or calendar) days after ``origin``
    at ``hour:minute`` local wall-clock time in ``tz``.
    """
    if days < 0:
        raise ValueError("days must not be negative")
    zone = _zone(tz)
    cursor = _coerce_utc(origin).astimezone(zone).date()
    counted = 0
    while counted < days:
        cursor += timedelta(days=1)
        if not business_days or cursor.weekday() < 5:
            counted += 1
    landed = datetime.combine(cursor, time(hour=hour, minute=minute), tzinfo=zone)
    return landed.astimezone(timezone.utc)


def snap_out_of_quiet_hours(
    origin: datetime,
    *,
    delay: timedelta,
    tz: str | ZoneInfo,
    window_start_hour: int,
    window_end_hour: int,
    snap_hour: int,
) -> datetime:
    """Return origin + delay, moved to snap_hour local when it lands in the quiet window.

    The window is inclusive of both hours, so anything from window_start_hour:00
    through window_end_hour:59 local is snapped. The result is never earlier than
    origin + delay: a target at 11:20 with an 11:00 snap stays at 11:20.
    """
    zone = _zone(tz)
    target = _coerce_utc(origin) + delay
    local_target = target.astimezone(zone)
    if not window_start_hour <= local_target.hour <= window_end_hour:
        return target
    snapped = datetime.combine(local_target.date(), time(hour=snap_hour), tzinfo=zone)
    return max(snapped.astimezone(timezone.utc), target)
