"""CLI runner for the STR market intelligence pipeline.

Run via: python -m strintel.runner <command>
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .collectors.orchestrator import ScrapeInProgressError, ScrapeOrchestrator
from .collectors.registry import default_registry
from .config import Settings
from .constants import NEIGHBORHOODS, PLATFORMS
from .models.market import JobStatus, JobType, ScrapeFilters
from .scheduler import Frequency, Scheduler
from .storage.database import MarketDatabase

console = Console()

STATUS_STYLES = {
    JobStatus.PENDING: "dim",
    JobStatus.RUNNING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "yellow",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with Rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def seed(db: MarketDatabase) -> tuple[int, int]:
    """Insert or refresh the known platforms and neighborhoods.

    Returns:
        (platforms seeded, neighborhoods seeded)
    """
    for slug, name, base_url, scrape_config in PLATFORMS:
        db.upsert_platform(slug, name, base_url=base_url, scrape_config=scrape_config)
    for slug, (name, name_ar, lat, lng, box) in NEIGHBORHOODS.items():
        db.upsert_neighborhood(
            slug, name, name_ar=name_ar, latitude=lat, longitude=lng, bounding_box=box
        )
    return len(PLATFORMS), len(NEIGHBORHOODS)


async def run_scrape(
    db: MarketDatabase,
    settings: Settings,
    platforms: Optional[list[str]] = None,
    neighborhoods: Optional[list[str]] = None,
    job_type: JobType = JobType.FULL_SCAN,
) -> int:
    """Run one manual scrape. Returns a process exit code."""
    orchestrator = ScrapeOrchestrator(db, default_registry(), settings)
    filters = ScrapeFilters(platforms=platforms, neighborhoods=neighborhoods, job_type=job_type)
    try:
        result = await orchestrator.run_scrape_job(filters)
    except ScrapeInProgressError as e:
        console.print(f"[yellow]{e}[/yellow]")
        return 1
    finally:
        await orchestrator.close()

    console.print(
        f"[bold]Scrape complete:[/bold] {len(result.job_ids)} jobs, "
        f"{result.total_listings} listings, {result.total_errors} errors "
        f"in {result.duration_ms / 1000:.1f}s"
    )
    return 0


async def run_schedule(db: MarketDatabase, settings: Settings, frequency: Frequency) -> None:
    """Run the scheduler in the foreground until interrupted."""
    orchestrator = ScrapeOrchestrator(db, default_registry(), settings)
    scheduler = Scheduler(orchestrator, settings=settings)
    scheduler.start(frequency)
    status = scheduler.get_status()
    console.print(
        f"[bold]Scheduler running[/bold] ({frequency.value}, {scheduler.timezone}); "
        f"next run at {status.next_run_at:%Y-%m-%d %H:%M %Z}"
    )
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        scheduler.stop()
        await orchestrator.close()


def print_jobs(db: MarketDatabase, limit: int) -> None:
    """Print the most recent scrape jobs."""
    jobs = db.list_jobs(limit=limit)
    if not jobs:
        console.print("[yellow]No scrape jobs recorded.[/yellow]")
        return

    platforms = {p.id: p.slug for p in db.list_platforms(active_only=False)}
    neighborhoods = {n.id: n.slug for n in db.list_neighborhoods(active_only=False)}

    table = Table(title="Recent scrape jobs")
    table.add_column("ID", justify="right")
    table.add_column("Platform")
    table.add_column("Neighborhood")
    table.add_column("Status")
    table.add_column("Found", justify="right")
    table.add_column("Snapshots", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Started")
    for job in jobs:
        style = STATUS_STYLES.get(job.status, "")
        table.add_row(
            str(job.id),
            platforms.get(job.platform_id, "-"),
            neighborhoods.get(job.neighborhood_id, "-"),
            f"[{style}]{job.status.value}[/{style}]" if style else job.status.value,
            str(job.listings_found),
            str(job.price_snapshots),
            str(job.errors),
            f"{job.started_at:%Y-%m-%d %H:%M}" if job.started_at else "-",
        )
    console.print(table)


def print_metrics(db: MarketDatabase, property_type: str) -> None:
    """Print the latest metrics per neighborhood for one property type."""
    latest = {}
    for metric in db.latest_metrics(property_type=property_type):
        latest[metric.neighborhood_id] = metric
    if not latest:
        console.print("[yellow]No metrics computed yet.[/yellow]")
        return

    names = {n.id: n.name for n in db.list_neighborhoods(active_only=False)}
    table = Table(title=f"Latest metrics ({property_type})")
    table.add_column("Neighborhood")
    table.add_column("ADR", justify="right")
    table.add_column("Occupancy", justify="right")
    table.add_column("RevPAR", justify="right")
    table.add_column("Median", justify="right")
    table.add_column("Listings", justify="right")
    table.add_column("Confidence")
    for neighborhood_id, m in sorted(latest.items()):
        table.add_row(
            names.get(neighborhood_id, str(neighborhood_id)),
            f"{m.adr:,.0f}",
            f"{m.occupancy_rate:.1f}%",
            f"{m.revpar:,.0f}",
            f"{m.median_price:,.0f}",
            str(m.total_listings),
            m.data_confidence.value,
        )
    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for every CLI command."""
    parser = argparse.ArgumentParser(
        description="STR market intelligence runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m strintel.runner seed
  python -m strintel.runner scrape --platform airbnb --neighborhood al-olaya
  python -m strintel.runner schedule --frequency weekly
  python -m strintel.runner jobs --limit 50
        """,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed", help="Seed platforms and neighborhoods")

    scrape = sub.add_parser("scrape", help="Run one scrape now")
    scrape.add_argument("--platform", action="append", dest="platforms", help="Platform slug (repeatable)")
    scrape.add_argument(
        "--neighborhood", action="append", dest="neighborhoods", help="Neighborhood slug (repeatable)"
    )
    scrape.add_argument(
        "--job-type",
        choices=[t.value for t in JobType],
        default=JobType.FULL_SCAN.value,
        help="Job type recorded on every job",
    )

    schedule = sub.add_parser("schedule", help="Run the scheduler in the foreground")
    schedule.add_argument(
        "--frequency",
        choices=[f.value for f in Frequency],
        default=None,
        help="Schedule frequency (default from STRINTEL_DEFAULT_FREQUENCY)",
    )

    sub.add_parser("sweep", help="Mark stale running jobs as failed")

    jobs = sub.add_parser("jobs", help="List recent scrape jobs")
    jobs.add_argument("--limit", type=int, default=20, help="Number of jobs to show")

    metrics = sub.add_parser("metrics", help="Show the latest neighborhood metrics")
    metrics.add_argument("--property-type", default="all", help="Property type slice")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for CLI."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)

    settings = Settings()
    db = MarketDatabase(settings.database_path, timezone=settings.timezone)

    if args.command == "seed":
        platform_count, neighborhood_count = seed(db)
        console.print(
            f"[green]Seeded {platform_count} platforms and {neighborhood_count} neighborhoods[/green]"
        )
        return 0

    if args.command == "scrape":
        return asyncio.run(
            run_scrape(db, settings, args.platforms, args.neighborhoods, JobType(args.job_type))
        )

    if args.command == "schedule":
        frequency = Frequency(args.frequency or settings.default_frequency)
        try:
            asyncio.run(run_schedule(db, settings, frequency))
        except KeyboardInterrupt:
            console.print("[dim]Scheduler stopped[/dim]")
        return 0

    if args.command == "sweep":
        swept = db.fail_stale_jobs(timedelta(minutes=settings.stale_job_minutes))
        console.print(f"Marked {swept} stale job(s) as failed")
        return 0

    if args.command == "jobs":
        print_jobs(db, args.limit)
        return 0

    if args.command == "metrics":
        print_metrics(db, args.property_type)
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
