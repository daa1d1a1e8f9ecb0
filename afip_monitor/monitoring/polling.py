"""
Adaptive Polling

Risk-based polling intervals and the per-CUIT job registry.

Interval tiers (defaults):
- risk >= 0.85: every 15 minutes
- risk >= 0.70: every hour
- risk >= 0.40: every 6 hours
- otherwise:    once a day

Jobs run on APScheduler with an explicit IntervalTrigger; the next fire time
is computed from the trigger itself. Each CUIT owns exactly one job, id
`poll:<cuit>`, replaced in place when its interval changes.
"""

import logging
import threading
from dataclasses import dataclass, replace as dataclass_replace
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from afip_monitor.models.monitoring import ComplianceStatus

logger = logging.getLogger(__name__)

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440

DEFAULT_POLLING_TIERS: Tuple[Tuple[float, int], ...] = ((0.85, 15), (0.70, 60), (0.40, 360))


def calculate_polling_interval(
    risk_score: float,
    tiers: Sequence[Tuple[float, int]] = DEFAULT_POLLING_TIERS,
    default_minutes: int = MINUTES_PER_DAY,
) -> int:
    """Polling interval in minutes for a risk score."""
    for threshold, minutes in sorted(tiers, key=lambda t: t[0], reverse=True):
        if risk_score >= threshold:
            return minutes
    return default_minutes


def determine_status(risk_score: float) -> ComplianceStatus:
    if risk_score >= 0.90:
        return ComplianceStatus.EXCELLENT
    if risk_score >= 0.75:
        return ComplianceStatus.GOOD
    if risk_score >= 0.60:
        return ComplianceStatus.FAIR
    return ComplianceStatus.POOR


def describe_schedule(interval_minutes: int, daily_hour: int = 8) -> str:
    """Human-readable schedule for an interval."""
    if interval_minutes <= MINUTES_PER_HOUR:
        return f"every {interval_minutes} minutes"
    if interval_minutes <= MINUTES_PER_DAY:
        hours = interval_minutes / MINUTES_PER_HOUR
        if hours.is_integer():
            return f"every {int(hours)} hours"
        return f"every {interval_minutes} minutes"
    days = interval_minutes // MINUTES_PER_DAY
    return f"daily at {daily_hour:02d}:00 every {days} days"


def build_trigger(
    interval_minutes: int,
    now: datetime,
    tz: ZoneInfo,
    daily_hour: int = 8,
) -> IntervalTrigger:
    """
    Interval trigger for a polling interval.

    `now` must be timezone-aware. Sub-day intervals first fire one interval
    from now; multi-day intervals fire at `daily_hour` local time every N
    days, starting with the next occurrence of that hour.
    """
    if interval_minutes <= MINUTES_PER_DAY:
        return IntervalTrigger(
            minutes=interval_minutes,
            start_date=now + timedelta(minutes=interval_minutes),
            timezone=tz,
        )

    days = max(1, interval_minutes // MINUTES_PER_DAY)
    local_now = now.astimezone(tz)
    first = local_now.replace(hour=daily_hour, minute=0, second=0, microsecond=0)
    if first <= local_now:
        first += timedelta(days=1)
    return IntervalTrigger(days=days, start_date=first, timezone=tz)


@dataclass(frozen=True)
class PollingJob:
    """In-memory handle for one CUIT's polling job."""
    cuit: str
    interval_minutes: int
    schedule: str
    job_id: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "cuit": self.cuit,
            "interval_minutes": self.interval_minutes,
            "schedule": self.schedule,
            "job_id": self.job_id,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
        }


class PollingRegistry:
    """
    CUIT -> PollingJob registry backed by an APScheduler instance.

    All mutations hold a lock; a job is always replaced as a whole, never
    deleted and re-inserted.
    """

    def __init__(
        self,
        scheduler,
        tz: ZoneInfo,
        daily_hour: int = 8,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._scheduler = scheduler
        self._tz = tz
        self._daily_hour = daily_hour
        self._clock = clock or (lambda: datetime.now(dt_timezone.utc))
        self._jobs: Dict[str, PollingJob] = {}
        self._lock = threading.RLock()

    @staticmethod
    def job_id_for(cuit: str) -> str:
        return f"poll:{cuit}"

    def schedule(
        self,
        cuit: str,
        interval_minutes: int,
        func: Callable[..., Awaitable],
    ) -> PollingJob:
        """Create or replace the polling job for a CUIT."""
        job_id = self.job_id_for(cuit)
        now = self._clock()
        trigger = build_trigger(interval_minutes, now, self._tz, self._daily_hour)
        next_run = trigger.get_next_fire_time(None, now)

        with self._lock:
            previous = self._jobs.get(cuit)
            if not self._scheduler.running:
                # Pending jobs are only de-duplicated on start
                self._remove_quietly(job_id)
            self._scheduler.add_job(
                func,
                trigger=trigger,
                args=[cuit],
                id=job_id,
                name=f"Compliance polling {cuit}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            job = PollingJob(
                cuit=cuit,
                interval_minutes=interval_minutes,
                schedule=describe_schedule(interval_minutes, self._daily_hour),
                job_id=job_id,
                next_run=next_run,
                last_run=previous.last_run if previous else None,
            )
            self._jobs[cuit] = job

        logger.debug(f"Scheduled polling for {cuit}: {job.schedule} ({interval_minutes} min)")
        return job

    def cancel(self, cuit: str) -> bool:
        """Cancel a CUIT's job. Returns False when there was nothing to cancel."""
        with self._lock:
            job = self._jobs.pop(cuit, None)
            removed = self._remove_quietly(self.job_id_for(cuit))
        return job is not None or removed

    def cancel_all(self) -> int:
        with self._lock:
            cuits = list(self._jobs)
            for cuit in cuits:
                self._remove_quietly(self.job_id_for(cuit))
            self._jobs.clear()
        return len(cuits)

    def mark_run(self, cuit: str, ran_at: datetime) -> None:
        with self._lock:
            job = self._jobs.get(cuit)
            if job is None:
                return
            aps_job = self._scheduler.get_job(job.job_id)
            next_run = getattr(aps_job, "next_run_time", None) or job.next_run
            self._jobs[cuit] = dataclass_replace(job, last_run=ran_at, next_run=next_run)

    def get(self, cuit: str) -> Optional[PollingJob]:
        with self._lock:
            return self._jobs.get(cuit)

    def jobs(self) -> List[PollingJob]:
        with self._lock:
            return list(self._jobs.values())

    def __contains__(self, cuit: str) -> bool:
        with self._lock:
            return cuit in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _remove_quietly(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
            return True
        except JobLookupError:
            return False
