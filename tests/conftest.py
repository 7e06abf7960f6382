"""Pytest fixtures and test utilities."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import pytest

from strintel.collectors.base import PlatformAdapter
from strintel.collectors.registry import AdapterRegistry
from strintel.config import Settings
from strintel.models.listing import PropertyType, ScrapedListing, ScrapeResult
from strintel.models.market import BoundingBox, Neighborhood, Platform
from strintel.storage.database import MarketDatabase

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

Outcome = Union[ScrapeResult, BaseException]


class FakeAdapter(PlatformAdapter):
    """Scripted adapter: returns (or raises) a fixed outcome per neighborhood slug."""

    def __init__(
        self,
        slug: str,
        script: Optional[dict[str, Outcome]] = None,
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
    ):
        self.slug = slug
        self.fetcher = None
        self.script = script or {}
        self.delay = delay
        self.gate = gate
        self.calls: list[str] = []
        self.started = asyncio.Event()
        self.closed = False

    async def scrape_area(self, area: Neighborhood, radius_km=None) -> ScrapeResult:
        self.calls.append(area.slug)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.script.get(area.slug, ScrapeResult())
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True


def make_listing(
    external_id: str,
    platform: str = "alpha",
    nightly_rate: Optional[float] = 400.0,
    host_id: Optional[str] = None,
    bedrooms: int = 1,
    **kwargs,
) -> ScrapedListing:
    """Build a ScrapedListing with sensible defaults."""
    data = {
        "external_id": external_id,
        "platform": platform,
        "title": f"Listing {external_id}",
        "property_type": PropertyType.ONE_BR if bedrooms == 1 else PropertyType.TWO_BR,
        "bedrooms": bedrooms,
        "host_id": host_id,
        "host_name": f"Host {host_id}" if host_id else None,
        "nightly_rate": nightly_rate,
    }
    data.update(kwargs)
    return ScrapedListing(**data)


def registry_with(adapters: dict[str, PlatformAdapter]) -> AdapterRegistry:
    """Registry whose factories hand out the given adapter instances."""
    registry = AdapterRegistry()
    for slug, adapter in adapters.items():
        registry.register(slug, lambda fetcher, settings, adapter=adapter: adapter)
    return registry


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings on a temporary database with no pacing delays."""
    return Settings(
        database_path=tmp_path / "strintel.db",
        request_delay_seconds=0,
        retry_base_delay_seconds=0,
        retry_jitter_seconds=0,
        cell_timeout_seconds=5,
    )


@pytest.fixture
def db(settings: Settings) -> MarketDatabase:
    """Empty market database."""
    return MarketDatabase(settings.database_path, timezone=settings.timezone)


@pytest.fixture
def seeded_db(db: MarketDatabase) -> MarketDatabase:
    """Database with platforms alpha/beta and neighborhoods n1/n2."""
    db.upsert_platform("alpha", "Alpha")
    db.upsert_platform("beta", "Beta")
    box = BoundingBox(ne_lat=24.71, ne_lng=46.695, sw_lat=24.685, sw_lng=46.67)
    db.upsert_neighborhood("n1", "North One", latitude=24.69, longitude=46.685, bounding_box=box)
    db.upsert_neighborhood("n2", "North Two", latitude=24.78, longitude=46.62)
    return db


@pytest.fixture
def alpha(seeded_db: MarketDatabase) -> Platform:
    """The alpha platform."""
    return seeded_db.get_platform("alpha")


@pytest.fixture
def beta(seeded_db: MarketDatabase) -> Platform:
    """The beta platform."""
    return seeded_db.get_platform("beta")


@pytest.fixture
def n1(seeded_db: MarketDatabase) -> Neighborhood:
    """The n1 neighborhood."""
    return seeded_db.get_neighborhood("n1")


@pytest.fixture
def n2(seeded_db: MarketDatabase) -> Neighborhood:
    """The n2 neighborhood."""
    return seeded_db.get_neighborhood("n2")
