"""Persisted market entities: sources, areas, listings, snapshots, jobs and analytics."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .listing import HostType, PropertyType

# Property type slices the metrics engine computes, "all" first
METRIC_PROPERTY_TYPES: tuple[str, ...] = ("all",) + tuple(pt.value for pt in PropertyType)


class JobStatus(str, Enum):
    """Lifecycle of one (platform, neighborhood) scrape attempt."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    """Kind of scrape requested. Recorded on the job; fetching is identical for all."""

    FULL_SCAN = "full_scan"
    PRICE_UPDATE = "price_update"
    CALENDAR_CHECK = "calendar_check"
    REVIEW_SCAN = "review_scan"


class DataConfidence(str, Enum):
    """How much of a metric row is backed by observed data."""

    REAL = "real"
    ESTIMATED = "estimated"
    DEFAULT = "default"


class BoundingBox(BaseModel):
    """Search rectangle for an area."""

    ne_lat: float
    ne_lng: float
    sw_lat: float
    sw_lng: float


class Platform(BaseModel):
    """An OTA data source. Seeded or admin-managed; read-only to the pipeline."""

    id: int
    slug: str
    name: str
    base_url: str | None = None
    is_active: bool = True
    scrape_config: dict[str, Any] = Field(
        default_factory=dict,
        description="Per-platform fetch overrides (max_concurrent, delay_seconds, proxies, ...)",
    )


class Neighborhood(BaseModel):
    """A geographic catchment area."""

    id: int
    slug: str
    name: str
    name_ar: str | None = None
    city: str = "Riyadh"
    latitude: float | None = None
    longitude: float | None = None
    bounding_box: BoundingBox | None = None
    is_active: bool = True


class ListingRecord(BaseModel):
    """A persisted listing row."""

    id: int
    external_id: str
    platform_id: int
    neighborhood_id: int | None = None
    title: str | None = None
    url: str | None = None
    property_type: PropertyType = PropertyType.ONE_BR
    host_type: HostType = HostType.INDIVIDUAL
    host_name: str | None = None
    host_id: str | None = None
    bedrooms: int | None = None
    bathrooms: float | None = None
    max_guests: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    rating: float | None = None
    review_count: int = 0
    photo_count: int = 0
    amenities: list[str] = Field(default_factory=list)
    is_superhost: bool = False
    response_rate: int | None = None
    instant_book: bool = False
    first_seen: datetime
    last_seen: datetime
    is_active: bool = True


class PriceSnapshot(BaseModel):
    """One immutable price/availability reading for a listing."""

    id: int
    listing_id: int
    snapshot_date: datetime
    nightly_rate: float | None = None
    weekly_rate: float | None = None
    monthly_rate: float | None = None
    cleaning_fee: float | None = None
    currency: str = "SAR"
    available_days: int | None = None
    blocked_days: int | None = None
    booked_days: int | None = None
    scrape_job_id: int | None = None


class ScrapeJob(BaseModel):
    """Audit record of one (platform, neighborhood) scrape attempt."""

    id: int
    platform_id: int | None = None
    neighborhood_id: int | None = None
    status: JobStatus = JobStatus.PENDING
    job_type: JobType = JobType.FULL_SCAN
    listings_found: int = 0
    listings_updated: int = 0
    price_snapshots: int = 0
    errors: int = 0
    error_log: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    created_at: datetime | None = None


class Competitor(BaseModel):
    """A detected portfolio operator, aggregated across platforms."""

    host_id: str
    host_name: str | None = None
    platform_ids: list[int] = Field(default_factory=list)
    portfolio_size: int = Field(default=0, ge=0)
    avg_rating: float = 0.0
    avg_review_count: float = 0.0
    total_reviews: int = 0
    avg_nightly_rate: float = 0.0
    neighborhoods: dict[str, int] = Field(
        default_factory=dict,
        description="Listing count per neighborhood id",
    )
    property_types: dict[str, int] = Field(
        default_factory=dict,
        description="Listing count per property type",
    )
    is_superhost: bool = False
    first_detected: datetime | None = None
    last_updated: datetime | None = None


class Metric(BaseModel):
    """One statistics row for a neighborhood / property type slice."""

    id: int | None = None
    neighborhood_id: int
    property_type: str = "all"
    metric_date: datetime
    period: str = "daily"
    adr: float = 0.0
    adr30: float = 0.0
    adr60: float = 0.0
    adr90: float = 0.0
    occupancy_rate: float = 0.0
    revpar: float = 0.0
    total_listings: int = 0
    new_listings: int = 0
    avg_rating: float = 0.0
    median_price: float = 0.0
    price_p25: float = 0.0
    price_p75: float = 0.0
    data_confidence: DataConfidence = DataConfidence.ESTIMATED


class ScrapeFilters(BaseModel):
    """Optional narrowing of the (platform x neighborhood) matrix."""

    platforms: list[str] | None = Field(default=None, description="Platform slugs; empty or omitted means all")
    neighborhoods: list[str] | None = Field(default=None, description="Neighborhood slugs; empty or omitted means all")
    job_type: JobType = JobType.FULL_SCAN


class RunResult(BaseModel):
    """Aggregate counters of one orchestrator run."""

    job_ids: list[int] = Field(default_factory=list)
    total_listings: int = 0
    total_errors: int = 0
    duration_ms: int = 0
