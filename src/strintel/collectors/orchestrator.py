"""Scrape orchestrator: runs the (platform x neighborhood) matrix.

Before scraping, every cell is claimed in the database with a pending
ScrapeJob; a cell another run or process still holds rejects the whole run.
For each cell the platform adapter then searches the neighborhood, and
listings plus price snapshots are persisted before the job is closed.
Platforms run concurrently, each with its own adapter, rate limiter and
proxy pool; the cells of one platform run one after another.
After the matrix, competitor profiles and market metrics are recomputed.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import NamedTuple, Optional

from ..analysis.competitors import CompetitorAggregator
from ..analysis.metrics import MetricsEngine
from ..config import Settings, config as default_config
from ..models.listing import ScrapeResult
from ..models.market import Neighborhood, Platform, RunResult, ScrapeFilters, ScrapeJob
from ..storage.database import CellsBusyError, MarketDatabase, utcnow
from .base import PlatformAdapter
from .registry import AdapterRegistry, default_registry

logger = logging.getLogger(__name__)

Cell = tuple[int, int]


class ScrapeInProgressError(RuntimeError):
    """Raised when a run overlaps cells another run is still scraping.

    Attributes:
        cells: The overlapping (platform_id, neighborhood_id) pairs
    """

    def __init__(self, cells: list[Cell]):
        self.cells = cells
        super().__init__(f"A scrape is already running for {len(cells)} of the requested cell(s)")


class CellOutcome(NamedTuple):
    """Counters of one finished cell."""

    job_id: int
    listings: int
    errors: int


class ScrapeOrchestrator:
    """Coordinates adapters, persistence and post-scrape aggregation.

    Example:
        orchestrator = ScrapeOrchestrator(MarketDatabase(config.database_path))
        result = await orchestrator.run_scrape_job(
            ScrapeFilters(platforms=["airbnb"], neighborhoods=["al-olaya"])
        )
        print(f"{result.total_listings} listings, {result.total_errors} errors")
    """

    def __init__(
        self,
        database: MarketDatabase,
        registry: Optional[AdapterRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the orchestrator.

        Args:
            database: Market database
            registry: Adapter registry (defaults to the shipped adapters)
            settings: Settings (defaults to the module-level config)
        """
        self.db = database
        self.registry = registry or default_registry()
        self.settings = settings or default_config
        self.competitors = CompetitorAggregator(database, self.settings)
        self.metrics = MetricsEngine(database, self.settings)
        self._adapters: dict[str, PlatformAdapter] = {}
        self._in_flight: set[Cell] = set()

    @property
    def is_running(self) -> bool:
        """Whether any run is currently scraping."""
        return bool(self._in_flight)

    def resolve_scope(
        self, filters: ScrapeFilters
    ) -> tuple[list[Platform], list[Neighborhood]]:
        """Active platforms with an adapter and active neighborhoods, narrowed by filters.

        An omitted or empty slug list selects everything.
        """
        platforms = self.db.list_platforms()
        if filters.platforms:
            platforms = [p for p in platforms if p.slug in filters.platforms]

        runnable = []
        for platform in platforms:
            if platform.slug not in self.registry:
                logger.warning(f"No adapter registered for {platform.slug}, skipping")
                continue
            runnable.append(platform)

        neighborhoods = self.db.list_neighborhoods()
        if filters.neighborhoods:
            neighborhoods = [n for n in neighborhoods if n.slug in filters.neighborhoods]

        return runnable, neighborhoods

    def _adapter_for(self, platform: Platform) -> PlatformAdapter:
        """Adapter for a platform, created once and reused across runs."""
        adapter = self._adapters.get(platform.slug)
        if adapter is None:
            adapter = self.registry.create(platform, self.settings)
            self._adapters[platform.slug] = adapter
        return adapter

    async def run_scrape_job(self, filters: Optional[ScrapeFilters] = None) -> RunResult:
        """Scrape every selected (platform, neighborhood) cell.

        Args:
            filters: Optional platform/neighborhood slugs and job type

        Returns:
            RunResult with the job ids and run-wide counters

        Raises:
            ScrapeInProgressError: If this or another process is scraping any of the same cells
        """
        filters = filters or ScrapeFilters()
        start = time.monotonic()

        platforms, neighborhoods = self.resolve_scope(filters)
        cells = {(p.id, n.id) for p in platforms for n in neighborhoods}
        overlap = cells & self._in_flight
        if overlap:
            raise ScrapeInProgressError(sorted(overlap))

        self._in_flight |= cells
        jobs: dict[Cell, ScrapeJob] = {}
        try:
            swept = self.db.fail_stale_jobs(timedelta(minutes=self.settings.stale_job_minutes))
            if swept:
                logger.info(f"Reconciled {swept} stale job(s) before the run")

            try:
                jobs = self.db.claim_cells(cells, filters.job_type)
            except CellsBusyError as e:
                raise ScrapeInProgressError(e.cells) from e

            logger.info(
                f"Starting {filters.job_type.value} run: {len(platforms)} platform(s) x "
                f"{len(neighborhoods)} neighborhood(s)"
            )
            outcomes = await asyncio.gather(
                *(self._run_platform(p, neighborhoods, jobs) for p in platforms),
                return_exceptions=True,
            )
        finally:
            self._in_flight -= cells
            if jobs:
                self.db.cancel_pending_jobs(j.id for j in jobs.values())

        result = RunResult()
        for platform, outcome in zip(platforms, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Platform {platform.slug} aborted: {outcome!r}")
                result.total_errors += 1
                continue
            for cell in outcome:
                result.job_ids.append(cell.job_id)
                result.total_listings += cell.listings
                result.total_errors += cell.errors

        self._aggregate()

        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Run finished: {len(result.job_ids)} jobs, {result.total_listings} listings, "
            f"{result.total_errors} errors in {result.duration_ms}ms"
        )
        return result

    def _aggregate(self) -> None:
        """Recompute competitors, then metrics. Failures are logged only."""
        try:
            self.competitors.update_competitors()
        except Exception:
            logger.exception("Competitor aggregation failed")
        try:
            self.metrics.update_metrics()
        except Exception:
            logger.exception("Metrics computation failed")

    async def _run_platform(
        self,
        platform: Platform,
        neighborhoods: list[Neighborhood],
        jobs: dict[Cell, ScrapeJob],
    ) -> list[CellOutcome]:
        """Scrape a platform's cells sequentially."""
        adapter = self._adapter_for(platform)
        outcomes = []
        for neighborhood in neighborhoods:
            job = jobs[(platform.id, neighborhood.id)]
            outcomes.append(await self._run_cell(adapter, platform, neighborhood, job))
        return outcomes

    async def _run_cell(
        self,
        adapter: PlatformAdapter,
        platform: Platform,
        neighborhood: Neighborhood,
        job: ScrapeJob,
    ) -> CellOutcome:
        """Run one cell and leave its job in a terminal state.

        Any failure, including one while storing results or closing the job,
        fails this cell only.
        """
        label = f"{platform.slug} -> {neighborhood.slug}"
        timeout = self.settings.cell_timeout_seconds

        try:
            self.db.start_job(job.id)
            try:
                result = await asyncio.wait_for(adapter.scrape_area(neighborhood), timeout=timeout)
            except asyncio.TimeoutError:
                self.db.fail_job(job.id, f"Timed out after {timeout:g}s")
                logger.error(f"✗ {label}: timed out after {timeout:g}s")
                return CellOutcome(job.id, 0, 1)
            except asyncio.CancelledError:
                self.db.cancel_job(job.id, "Run cancelled")
                logger.warning(f"✗ {label}: cancelled")
                raise

            return self._persist(job, platform, neighborhood, result, label)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"✗ {label}: {message}")
            self._fail_quietly(job.id, message)
            return CellOutcome(job.id, 0, 1)

    def _fail_quietly(self, job_id: int, message: str) -> None:
        """Fail a job; a database error here is logged, not raised."""
        try:
            self.db.fail_job(job_id, message)
        except Exception:
            logger.exception(f"Could not mark job {job_id} failed")

    def _persist(
        self,
        job: ScrapeJob,
        platform: Platform,
        neighborhood: Neighborhood,
        result: ScrapeResult,
        label: str,
    ) -> CellOutcome:
        """Store a cell's listings and snapshots, then complete its job."""
        now = utcnow()
        errors = list(result.errors)
        stored = 0
        snapshots = 0

        for listing in result.listings:
            try:
                listing_id, _ = self.db.upsert_listing(listing, platform.id, neighborhood.id, now=now)
                if listing.has_price:
                    self.db.insert_price_snapshot(listing_id, listing, job.id, now=now)
                    snapshots += 1
                stored += 1
            except Exception as e:
                errors.append(f"Failed to store listing {listing.external_id}: {e}")
                logger.error(f"{label}: failed to store listing {listing.external_id}: {e}")

        self.db.complete_job(
            job.id,
            listings_found=result.total_found,
            listings_updated=stored,
            price_snapshots=snapshots,
            errors=errors,
        )
        logger.info(f"✓ {label}: {result.total_found} listings, {len(errors)} errors")
        return CellOutcome(job.id, result.total_found, len(errors))

    async def close(self) -> None:
        """Close every adapter created by this orchestrator."""
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()
