"""Tests for the recurring scheduler."""

import asyncio
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import pytest

from strintel.collectors.orchestrator import ScrapeInProgressError
from strintel.models.market import JobType, RunResult
from apscheduler.triggers.cron import CronTrigger

from strintel.scheduler import (
    Frequency,
    Scheduler,
    build_trigger,
    cron_expression,
    next_fire_time,
    next_run_at,
)

RIYADH = ZoneInfo("Asia/Riyadh")


def riyadh(*args) -> datetime:
    return datetime(*args, tzinfo=RIYADH)


class FakeOrchestrator:
    """Records calls; optionally blocks on a gate or raises."""

    def __init__(self, gate: Optional[asyncio.Event] = None, error: Optional[BaseException] = None):
        self.gate = gate
        self.error = error
        self.calls = []
        self.started = asyncio.Event()

    async def run_scrape_job(self, filters=None) -> RunResult:
        self.calls.append(filters)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return RunResult(job_ids=[1, 2], total_listings=42, total_errors=3, duration_ms=1500)


class TestNextRunAt:
    """Test fire time computation in the schedule timezone."""

    def test_daily(self):
        """Same day before the hour, next day after it."""
        assert next_run_at(Frequency.DAILY, riyadh(2026, 1, 7, 1, 30)) == riyadh(2026, 1, 7, 2)
        assert next_run_at(Frequency.DAILY, riyadh(2026, 1, 7, 3)) == riyadh(2026, 1, 8, 2)

    def test_strictly_after(self):
        """Exactly at the fire time schedules the following one."""
        assert next_run_at(Frequency.DAILY, riyadh(2026, 1, 7, 2)) == riyadh(2026, 1, 8, 2)

    def test_weekly_fires_on_monday(self):
        """2026-01-05 is a Monday."""
        assert next_run_at(Frequency.WEEKLY, riyadh(2026, 1, 1, 12)) == riyadh(2026, 1, 5, 2)
        assert next_run_at(Frequency.WEEKLY, riyadh(2026, 1, 5, 2, 1)) == riyadh(2026, 1, 12, 2)

    def test_biweekly(self):
        """Fires on the 1st and 15th."""
        assert next_run_at(Frequency.BIWEEKLY, riyadh(2026, 1, 2)) == riyadh(2026, 1, 15, 2)
        assert next_run_at(Frequency.BIWEEKLY, riyadh(2026, 1, 15, 3)) == riyadh(2026, 2, 1, 2)

    def test_monthly(self):
        """Fires on the 1st."""
        assert next_run_at(Frequency.MONTHLY, riyadh(2026, 1, 1, 2, 30)) == riyadh(2026, 2, 1, 2)
        assert next_run_at("monthly", riyadh(2026, 12, 31, 23)) == riyadh(2027, 1, 1, 2)

    def test_utc_input(self):
        """A UTC reference time is evaluated in the schedule timezone."""
        now = datetime(2026, 1, 4, 23, 30, tzinfo=timezone.utc)  # Jan 5 02:30 in Riyadh

        fire = next_run_at(Frequency.DAILY, now)

        assert fire == riyadh(2026, 1, 6, 2)
        assert fire.astimezone(timezone.utc) == datetime(2026, 1, 5, 23, 0, tzinfo=timezone.utc)

    def test_custom_hour_and_zone(self):
        """Hour and timezone are configurable."""
        now = datetime(2026, 1, 7, 0, 0, tzinfo=timezone.utc)

        fire = next_run_at(Frequency.DAILY, now, hour=5, tz="UTC")

        assert fire == datetime(2026, 1, 7, 5, 0, tzinfo=timezone.utc)

    def test_cron_expression(self):
        """Cron strings follow the configured hour."""
        assert cron_expression(Frequency.WEEKLY) == "0 2 * * 1"
        assert cron_expression(Frequency.WEEKLY, 3) == "0 3 * * 1"
        assert cron_expression(Frequency.BIWEEKLY) == "0 2 1,15 * *"


class TestBuildTrigger:
    """Test the CronTrigger behind each frequency."""

    def test_trigger_in_schedule_zone(self):
        """The trigger is evaluated in the requested timezone."""
        trigger = build_trigger(Frequency.DAILY, tz="Asia/Riyadh")

        assert isinstance(trigger, CronTrigger)
        assert str(trigger.timezone) == "Asia/Riyadh"

    def test_consecutive_fires(self):
        """Chaining fire times walks the cron schedule."""
        trigger = build_trigger(Frequency.BIWEEKLY)
        fires = []
        now = riyadh(2026, 1, 20)
        for _ in range(4):
            now = next_fire_time(trigger, now)
            fires.append(now)

        assert fires == [riyadh(2026, 2, 1, 2), riyadh(2026, 2, 15, 2),
                         riyadh(2026, 3, 1, 2), riyadh(2026, 3, 15, 2)]

    def test_crontab_monday_is_monday(self):
        """Crontab weekday 1 fires on Mondays, across several weeks."""
        trigger = build_trigger(Frequency.WEEKLY, hour=6)
        now = riyadh(2026, 3, 1)
        for _ in range(3):
            now = next_fire_time(trigger, now)
            assert now.weekday() == 0
            assert now.hour == 6


class TestSchedulerLifecycle:
    """Test start, stop and status."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, settings):
        """Status reflects the active schedule."""
        clock = lambda: riyadh(2026, 1, 1, 12)
        scheduler = Scheduler(FakeOrchestrator(), settings=settings, clock=clock)

        scheduler.start(Frequency.WEEKLY)
        status = scheduler.get_status()

        assert status.is_running is True
        assert status.frequency == Frequency.WEEKLY
        assert status.next_run_at == riyadh(2026, 1, 5, 2)

        scheduler.stop()
        await asyncio.sleep(0)
        status = scheduler.get_status()

        assert status.is_running is False
        assert status.next_run_at is None

    @pytest.mark.asyncio
    async def test_restart_replaces_schedule(self, settings):
        """Starting again swaps the frequency."""
        clock = lambda: riyadh(2026, 1, 2, 12)
        scheduler = Scheduler(FakeOrchestrator(), settings=settings, clock=clock)

        scheduler.start(Frequency.WEEKLY)
        first_task = scheduler._task
        scheduler.start(Frequency.BIWEEKLY)
        await asyncio.sleep(0)

        assert first_task.cancelled()
        assert scheduler.get_status().frequency == Frequency.BIWEEKLY
        assert scheduler.get_status().next_run_at == riyadh(2026, 1, 15, 2)
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_fires_at_scheduled_time(self, settings):
        """The loop sleeps until the fire time, then runs a full scan."""
        orchestrator = FakeOrchestrator()
        clock = lambda: riyadh(2026, 1, 7, 1, 59, 59, 950000)
        scheduler = Scheduler(orchestrator, settings=settings, clock=clock)

        scheduler.start(Frequency.DAILY)
        await asyncio.wait_for(orchestrator.started.wait(), timeout=2)
        scheduler.stop()

        assert orchestrator.calls[0].job_type == JobType.FULL_SCAN
        assert orchestrator.calls[0].platforms is None

    @pytest.mark.asyncio
    async def test_stop_does_not_interrupt_run(self, settings):
        """A run in progress completes after the scheduler is stopped."""
        gate = asyncio.Event()
        orchestrator = FakeOrchestrator(gate=gate)
        clock = lambda: riyadh(2026, 1, 7, 1, 59, 59, 950000)
        scheduler = Scheduler(orchestrator, settings=settings, clock=clock)

        scheduler.start(Frequency.DAILY)
        await asyncio.wait_for(orchestrator.started.wait(), timeout=2)
        scheduler.stop()
        await asyncio.sleep(0)

        gate.set()
        summary = await scheduler._current_run

        assert summary.listings == 42
        assert scheduler.get_status().total_runs == 1
        assert scheduler.get_status().is_running is False


class TestRunJob:
    """Test manual and scheduled run bookkeeping."""

    @pytest.mark.asyncio
    async def test_records_result(self, settings):
        """A successful run updates the status."""
        now = riyadh(2026, 1, 7, 10)
        scheduler = Scheduler(FakeOrchestrator(), settings=settings, clock=lambda: now)

        summary = await scheduler.trigger_now()
        status = scheduler.get_status()

        assert summary.listings == 42
        assert summary.errors == 3
        assert summary.duration_ms == 1500
        assert status.total_runs == 1
        assert status.last_run_at == now
        assert status.last_run_result == summary

    @pytest.mark.asyncio
    async def test_failure_recorded(self, settings):
        """A crashing run is recorded with its error."""
        scheduler = Scheduler(FakeOrchestrator(error=RuntimeError("db locked")), settings=settings)

        summary = await scheduler.run_job()

        assert summary.errors == 1
        assert summary.listings == 0
        assert summary.error == "db locked"
        assert scheduler.get_status().total_runs == 1

    @pytest.mark.asyncio
    async def test_concurrent_fire_skipped(self, settings):
        """A fire while a run executes is a no-op."""
        gate = asyncio.Event()
        orchestrator = FakeOrchestrator(gate=gate)
        scheduler = Scheduler(orchestrator, settings=settings)

        first = asyncio.create_task(scheduler.run_job())
        await asyncio.wait_for(orchestrator.started.wait(), timeout=1)

        assert await scheduler.run_job() is None

        gate.set()
        assert (await first).listings == 42
        assert len(orchestrator.calls) == 1
        assert scheduler.get_status().total_runs == 1

    @pytest.mark.asyncio
    async def test_overlap_with_manual_run_skipped(self, settings):
        """An orchestrator already scraping the cells makes the fire a no-op."""
        scheduler = Scheduler(
            FakeOrchestrator(error=ScrapeInProgressError([(1, 1)])), settings=settings
        )

        assert await scheduler.run_job() is None
        assert scheduler.get_status().total_runs == 0
        assert scheduler.get_status().last_run_result is None
