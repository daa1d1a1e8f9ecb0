"""Tests for adaptive polling intervals and the polling job registry."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from afip_monitor.models.monitoring import ComplianceStatus
from afip_monitor.monitoring.polling import (
    PollingRegistry,
    build_trigger,
    calculate_polling_interval,
    describe_schedule,
    determine_status,
)

CUIT = "20123456786"
NOW = datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc)
UTC = ZoneInfo("UTC")


async def noop_check(cuit):
    pass


# =============================================================================
# Interval calculation
# =============================================================================

class TestPollingInterval:

    @pytest.mark.parametrize("score, minutes", [
        (1.0, 15),
        (0.92, 15),
        (0.85, 15),
        (0.84, 60),
        (0.70, 60),
        (0.55, 360),
        (0.40, 360),
        (0.39, 1440),
        (0.0, 1440),
    ])
    def test_tiers(self, score, minutes):
        assert calculate_polling_interval(score) == minutes

    def test_monotonically_non_increasing(self):
        scores = [i / 100 for i in range(101)]
        intervals = [calculate_polling_interval(s) for s in scores]
        for lower, higher in zip(intervals, intervals[1:]):
            assert higher <= lower

    def test_custom_tiers_are_sorted(self):
        tiers = [(0.5, 30), (0.9, 5)]
        assert calculate_polling_interval(0.95, tiers, default_minutes=120) == 5
        assert calculate_polling_interval(0.6, tiers, default_minutes=120) == 30
        assert calculate_polling_interval(0.1, tiers, default_minutes=120) == 120


class TestStatusAndSchedule:

    @pytest.mark.parametrize("score, status", [
        (0.95, ComplianceStatus.EXCELLENT),
        (0.90, ComplianceStatus.EXCELLENT),
        (0.80, ComplianceStatus.GOOD),
        (0.60, ComplianceStatus.FAIR),
        (0.59, ComplianceStatus.POOR),
    ])
    def test_determine_status(self, score, status):
        assert determine_status(score) == status

    def test_describe_schedule(self):
        assert describe_schedule(15) == "every 15 minutes"
        assert describe_schedule(360) == "every 6 hours"
        assert describe_schedule(2880, daily_hour=8) == "daily at 08:00 every 2 days"


class TestBuildTrigger:

    def test_sub_day_interval_fires_one_interval_from_now(self):
        trigger = build_trigger(15, NOW, UTC)
        assert trigger.interval == timedelta(minutes=15)
        assert trigger.get_next_fire_time(None, NOW) == NOW + timedelta(minutes=15)

    def test_multi_day_interval_fires_at_daily_hour(self):
        trigger = build_trigger(2880, NOW, UTC, daily_hour=8)
        assert trigger.interval == timedelta(days=2)
        first = trigger.get_next_fire_time(None, NOW)
        assert first == datetime(2024, 3, 13, 8, 0, tzinfo=timezone.utc)


# =============================================================================
# Registry
# =============================================================================

class TestPollingRegistry:

    @pytest.mark.asyncio
    async def test_schedule_creates_job(self, scheduler):
        registry = PollingRegistry(scheduler, tz=UTC, clock=lambda: NOW)

        job = registry.schedule(CUIT, 15, noop_check)

        assert job.job_id == f"poll:{CUIT}"
        assert job.interval_minutes == 15
        assert job.schedule == "every 15 minutes"
        assert job.next_run == NOW + timedelta(minutes=15)
        assert CUIT in registry
        aps_job = scheduler.get_job(job.job_id)
        assert aps_job.trigger.interval == timedelta(minutes=15)
        assert aps_job.args == (CUIT,)

    @pytest.mark.asyncio
    async def test_reschedule_replaces_job(self, scheduler):
        registry = PollingRegistry(scheduler, tz=UTC, clock=lambda: NOW)

        registry.schedule(CUIT, 15, noop_check)
        job = registry.schedule(CUIT, 360, noop_check)

        assert len(registry) == 1
        assert len(scheduler.get_jobs()) == 1
        assert job.interval_minutes == 360
        assert scheduler.get_job(f"poll:{CUIT}").trigger.interval == timedelta(hours=6)

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, scheduler):
        registry = PollingRegistry(scheduler, tz=UTC, clock=lambda: NOW)
        registry.schedule(CUIT, 60, noop_check)

        assert registry.cancel(CUIT) is True
        assert registry.cancel(CUIT) is False
        assert scheduler.get_job(f"poll:{CUIT}") is None
        assert registry.get(CUIT) is None

    @pytest.mark.asyncio
    async def test_cancel_all(self, scheduler):
        registry = PollingRegistry(scheduler, tz=UTC, clock=lambda: NOW)
        registry.schedule("20123456786", 60, noop_check)
        registry.schedule("30714567892", 360, noop_check)

        assert registry.cancel_all() == 2
        assert len(registry) == 0
        assert scheduler.get_jobs() == []

    def test_schedule_before_scheduler_start(self):
        from apscheduler.schedulers.asyncio import AsyncIOScheduler

        scheduler = AsyncIOScheduler(timezone="UTC")
        registry = PollingRegistry(scheduler, tz=UTC, clock=lambda: NOW)

        registry.schedule(CUIT, 15, noop_check)
        registry.schedule(CUIT, 60, noop_check)

        assert len(scheduler.get_jobs()) == 1
        assert registry.get(CUIT).interval_minutes == 60

    @pytest.mark.asyncio
    async def test_mark_run_keeps_interval(self, scheduler):
        registry = PollingRegistry(scheduler, tz=UTC, clock=lambda: NOW)
        registry.schedule(CUIT, 60, noop_check)

        registry.mark_run(CUIT, datetime(2024, 3, 12, 10, 0))

        job = registry.get(CUIT)
        assert job.last_run == datetime(2024, 3, 12, 10, 0)
        assert job.interval_minutes == 60
        assert job.to_dict()["last_run"] == "2024-03-12T10:00:00"
