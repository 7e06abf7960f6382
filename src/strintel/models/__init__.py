"""Data models for the STR market intelligence pipeline."""

from strintel.models.listing import (
    HostType,
    PropertyType,
    ScrapedListing,
    ScrapeResult,
    property_type_for_bedrooms,
)
from strintel.models.market import (
    METRIC_PROPERTY_TYPES,
    BoundingBox,
    Competitor,
    DataConfidence,
    JobStatus,
    JobType,
    ListingRecord,
    Metric,
    Neighborhood,
    Platform,
    PriceSnapshot,
    RunResult,
    ScrapeFilters,
    ScrapeJob,
)

__all__ = [
    "METRIC_PROPERTY_TYPES",
    "BoundingBox",
    "Competitor",
    "DataConfidence",
    "HostType",
    "JobStatus",
    "JobType",
    "ListingRecord",
    "Metric",
    "Neighborhood",
    "Platform",
    "PriceSnapshot",
    "PropertyType",
    "RunResult",
    "ScrapeFilters",
    "ScrapeJob",
    "ScrapedListing",
    "ScrapeResult",
    "property_type_for_bedrooms",
]
