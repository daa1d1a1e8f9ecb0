"""
Working-hours adjustment for escalation delays.

Inside working hours a delay is used as is. Outside them, the escalation is
deferred so it never fires over a weekend or at night: if the original delay
already reaches past the next working start it is kept, otherwise the
escalation fires a grace period after that start.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo


class WorkingHours:
    """Working days (Monday = 0) and [start, end) hours in a local timezone."""

    def __init__(
        self,
        tz: ZoneInfo,
        working_days: Iterable[int] = (0, 1, 2, 3, 4),
        start_hour: int = 8,
        end_hour: int = 18,
        grace: timedelta = timedelta(minutes=30),
    ):
        self.tz = tz
        self.working_days = frozenset(working_days)
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.grace = grace

    @classmethod
    def from_settings(cls, settings) -> "WorkingHours":
        return cls(
            tz=ZoneInfo(settings.TIMEZONE),
            working_days=settings.WORKING_DAYS,
            start_hour=settings.WORKING_HOURS_START,
            end_hour=settings.WORKING_HOURS_END,
            grace=timedelta(minutes=settings.ESCALATION_AFTER_HOURS_GRACE_MINUTES),
        )

    def localize(self, moment: datetime) -> datetime:
        """Naive datetimes are taken as UTC."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz)

    def is_working_time(self, moment: datetime) -> bool:
        local = self.localize(moment)
        return (
            local.weekday() in self.working_days
            and self.start_hour <= local.hour < self.end_hour
        )

    def next_working_start(self, moment: datetime) -> Optional[datetime]:
        """Start of the next working window after `moment`, in local time."""
        if not self.working_days:
            return None
        local = self.localize(moment)
        day = local.replace(hour=self.start_hour, minute=0, second=0, microsecond=0)
        if local.weekday() in self.working_days and local < day:
            return day
        for _ in range(7):
            day += timedelta(days=1)
            if day.weekday() in self.working_days:
                return day
        return None

    def adjust_delay(self, delay: timedelta, now: datetime) -> timedelta:
        """Delay to use for an escalation computed at `now`."""
        if self.is_working_time(now):
            return delay

        next_start = self.next_working_start(now)
        if next_start is None:
            return delay

        wait = next_start.astimezone(timezone.utc) - self.localize(now).astimezone(timezone.utc)
        if wait < delay:
            return delay
        return wait + self.grace
