"""Recurring scrape scheduler.

Fires a full-matrix scrape on a cron schedule evaluated in a named timezone
(Asia/Riyadh by default). Fire times come from an APScheduler CronTrigger
built from the frequency's cron expression. One schedule per Scheduler
instance; the instance is owned by the process entry point.

Example:
    scheduler = Scheduler(orchestrator, timezone="Asia/Riyadh", hour=2)
    scheduler.start(Frequency.WEEKLY)
    ...
    scheduler.stop()
"""

import asyncio
import logging
import re
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, Field

from .collectors.orchestrator import ScrapeInProgressError, ScrapeOrchestrator
from .config import Settings, config as default_config
from .models.market import JobType, ScrapeFilters
from .storage.database import as_utc, utcnow

logger = logging.getLogger(__name__)


class Frequency(str, Enum):
    """How often the scheduled scrape fires."""

    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


# Cron equivalents at the default 02:00 local fire time
CRON_EXPRESSIONS = {
    Frequency.DAILY: "0 2 * * *",
    Frequency.WEEKLY: "0 2 * * 1",
    Frequency.BIWEEKLY: "0 2 1,15 * *",
    Frequency.MONTHLY: "0 2 1 * *",
}

# Crontab numbers weekdays from Sunday (0 or 7); CronTrigger takes names
CRONTAB_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def cron_expression(frequency: Frequency, hour: int = 2) -> str:
    """Cron expression for a frequency at a given local hour."""
    _, _, rest = CRON_EXPRESSIONS[Frequency(frequency)].split(" ", 2)
    return f"0 {hour} {rest}"


def build_trigger(
    frequency: Union[Frequency, str],
    hour: int = 2,
    tz: str = "Asia/Riyadh",
) -> CronTrigger:
    """CronTrigger firing the frequency's cron expression in ``tz``."""
    minute, hour_field, day, month, day_of_week = cron_expression(Frequency(frequency), hour).split()
    # Step values ("*/2") are left as numbers
    day_of_week = re.sub(
        r"(?<!/)\d+", lambda m: CRONTAB_WEEKDAYS[int(m.group()) % 7], day_of_week
    )
    return CronTrigger.from_crontab(
        f"{minute} {hour_field} {day} {month} {day_of_week}", timezone=ZoneInfo(tz)
    )


def next_fire_time(trigger: CronTrigger, now: datetime) -> datetime:
    """The trigger's first fire time strictly after ``now`` (naive values are UTC)."""
    # CronTrigger may return ``now`` itself when it falls on a fire time
    fire = trigger.get_next_fire_time(None, as_utc(now) + timedelta(microseconds=1))
    if fire is None:
        raise RuntimeError(f"Trigger {trigger} has no fire time after {now.isoformat()}")
    return fire


def next_run_at(
    frequency: Union[Frequency, str],
    now: datetime,
    hour: int = 2,
    tz: str = "Asia/Riyadh",
) -> datetime:
    """Next fire time strictly after ``now``.

    Args:
        frequency: Schedule frequency
        now: Reference time (naive values are taken as UTC)
        hour: Local fire hour
        tz: IANA timezone the schedule is evaluated in

    Returns:
        Aware datetime in ``tz``
    """
    return next_fire_time(build_trigger(frequency, hour, tz), now)


class RunSummary(BaseModel):
    """Outcome of one scheduled or manual run."""

    listings: int = 0
    errors: int = 0
    duration_ms: int = 0
    error: Optional[str] = Field(default=None, description="Failure message when the run raised")


class SchedulerStatus(BaseModel):
    """Snapshot of the scheduler state."""

    is_running: bool = False
    frequency: Optional[Frequency] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_run_result: Optional[RunSummary] = None
    total_runs: int = 0


class Scheduler:
    """Fires ``run_scrape_job`` on a recurring schedule.

    ``stop()`` cancels the timer only; a run already executing is allowed
    to finish. A fire while a run is still executing is skipped.
    """

    def __init__(
        self,
        orchestrator: ScrapeOrchestrator,
        timezone: Optional[str] = None,
        hour: Optional[int] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize a stopped scheduler.

        Args:
            orchestrator: Orchestrator the runs go through
            timezone: IANA timezone (defaults to settings.timezone)
            hour: Local fire hour (defaults to settings.schedule_hour)
            settings: Settings (defaults to the module-level config)
            clock: Source of the current time
        """
        settings = settings or default_config
        self.orchestrator = orchestrator
        self.timezone = timezone or settings.timezone
        self.hour = settings.schedule_hour if hour is None else hour
        self._clock = clock
        self._frequency: Optional[Frequency] = None
        self._trigger: Optional[CronTrigger] = None
        self._task: Optional[asyncio.Task] = None
        self._current_run: Optional[asyncio.Future] = None
        self._run_lock = asyncio.Lock()
        self._last_run_at: Optional[datetime] = None
        self._next_run_at: Optional[datetime] = None
        self._last_run_result: Optional[RunSummary] = None
        self._total_runs = 0

    @property
    def is_running(self) -> bool:
        """Whether a schedule is active."""
        return self._task is not None and not self._task.done()

    def start(self, frequency: Union[Frequency, str] = Frequency.WEEKLY) -> None:
        """Start firing on a schedule. Must be called from a running event loop.

        Starting while already running replaces the previous schedule.
        """
        frequency = Frequency(frequency)
        if self.is_running:
            self.stop()
        self._frequency = frequency
        self._trigger = build_trigger(frequency, self.hour, self.timezone)
        self._next_run_at = next_fire_time(self._trigger, self._clock())
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            f"Scheduler started ({frequency.value}, cron '{cron_expression(frequency, self.hour)}' "
            f"{self.timezone}), next run at {self._next_run_at.isoformat()}"
        )

    def stop(self) -> None:
        """Stop the schedule. An in-flight run keeps going."""
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Scheduler stopped")
        self._task = None
        self._next_run_at = None

    async def _loop(self) -> None:
        """Sleep until the next fire, run, repeat."""
        while True:
            now = self._clock()
            self._next_run_at = next_fire_time(self._trigger, now)
            delay = (self._next_run_at - now).total_seconds()
            await asyncio.sleep(max(0.0, delay))

            if self._current_run is None or self._current_run.done():
                self._current_run = asyncio.ensure_future(self.run_job())
            # Shielded so stop() never interrupts a run in progress
            await asyncio.shield(self._current_run)

    async def run_job(self) -> Optional[RunSummary]:
        """Run one full-matrix scrape and record its outcome.

        Returns:
            The run summary, or None when skipped because a run was in progress
        """
        if self._run_lock.locked():
            logger.info("Previous run still executing, skipping this fire")
            return None

        async with self._run_lock:
            started_at = self._clock()
            start = time.monotonic()
            try:
                result = await self.orchestrator.run_scrape_job(
                    ScrapeFilters(job_type=JobType.FULL_SCAN)
                )
                summary = RunSummary(
                    listings=result.total_listings,
                    errors=result.total_errors,
                    duration_ms=result.duration_ms,
                )
            except ScrapeInProgressError as e:
                logger.info(f"Skipping run: {e}")
                return None
            except Exception as e:
                logger.exception("Scheduled scrape failed")
                summary = RunSummary(
                    listings=0,
                    errors=1,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    error=str(e) or type(e).__name__,
                )

            self._last_run_at = started_at
            self._last_run_result = summary
            self._total_runs += 1
            if self.is_running and self._trigger is not None:
                self._next_run_at = next_fire_time(self._trigger, self._clock())
            logger.info(
                f"Run #{self._total_runs} done: {summary.listings} listings, "
                f"{summary.errors} errors, {summary.duration_ms}ms"
            )
            return summary

    async def trigger_now(self) -> Optional[RunSummary]:
        """Run immediately through the same entry point as scheduled fires."""
        return await self.run_job()

    def get_status(self) -> SchedulerStatus:
        """Return current scheduler status."""
        return SchedulerStatus(
            is_running=self.is_running,
            frequency=self._frequency,
            last_run_at=self._last_run_at,
            next_run_at=self._next_run_at,
            last_run_result=self._last_run_result,
            total_runs=self._total_runs,
        )
