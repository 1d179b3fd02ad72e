from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import Settings
from .models import NotificationType
from .schedule import local_time_after_days, snap_out_of_quiet_hours

# notification type -> business-day offset at the follow-up wall-clock time
BUSINESS_DAY_OFFSETS: dict[str, int] = {
    "proposal_1st": 3,
    "proposal_2nd": 6,
    "invoice_1st": 2,
    "invoice_2nd": 4,
    "calendly": 1,
    "agreement_1st": 2,
    "agreement_2nd": 4,
}

SECOND_REMINDERS: dict[str, str] = {
    "proposal_1st": "proposal_2nd",
    "invoice_1st": "invoice_2nd",
    "agreement_1st": "agreement_2nd",
}


@dataclass(frozen=True)
class ScheduleEntry:
    type: NotificationType
    scheduled_at: datetime


@dataclass(frozen=True)
class SchedulePolicy:
    timezone: str = "Asia/Tokyo"
    followup_hour: int = 15
    followup_minute: int = 0
    call_check_delay: timedelta = timedelta(hours=3)
    quiet_start_hour: int = 3
    quiet_end_hour: int = 11
    snap_hour: int = 11

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulePolicy":
        return cls(
            timezone=settings.local_timezone,
            followup_hour=settings.followup_hour,
            followup_minute=settings.followup_minute,
            call_check_delay=timedelta(hours=settings.call_check_delay_hours),
            quiet_start_hour=settings.call_check_quiet_start_hour,
            quiet_end_hour=settings.call_check_quiet_end_hour,
            snap_hour=settings.call_check_snap_hour,
        )


class SchedulePlanner:
    def __init__(self, policy: SchedulePolicy | None = None) -> None:
        self._policy = policy or SchedulePolicy()

    def _at_business_offset(self, notification_type: str, origin: datetime) -> datetime:
        return local_time_after_days(
            origin,
            BUSINESS_DAY_OFFSETS[notification_type],
            hour=self._policy.followup_hour,
            minute=self._policy.followup_minute,
            tz=self._policy.timezone,
            business_days=True,
        )

    def plan(self, notification_type: NotificationType, origin: datetime) -> list[ScheduleEntry]:
        if notification_type == "bot_join_call_check":
            scheduled_at = snap_out_of_quiet_hours(
                origin,
                delay=self._policy.call_check_delay,
                tz=self._policy.timezone,
                window_start_hour=self._policy.quiet_start_hour,
                window_end_hour=self._policy.quiet_end_hour,
                snap_hour=self._policy.snap_hour,
            )
            return [ScheduleEntry(type=notification_type, scheduled_at=scheduled_at)]

        if notification_type not in BUSINESS_DAY_OFFSETS:
            raise ValueError(f"unsupported notification type: {notification_type}")

        entries = [
            ScheduleEntry(
                type=notification_type,
                scheduled_at=self._at_business_offset(notification_type, origin),
            )
        ]
        second = SECOND_REMINDERS.get(notification_type)
        if second is not None:
            entries.append(
                ScheduleEntry(
                    type=second,  # type: ignore[arg-type]
                    scheduled_at=self._at_business_offset(second, origin),
                )
            )
        return entries
