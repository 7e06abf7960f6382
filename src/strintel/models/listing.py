"""Normalized listing records produced by platform adapters."""

from enum import Enum

from pydantic import BaseModel, Field, computed_field


class PropertyType(str, Enum):
    """Unit size buckets used for every slice of the market."""

    STUDIO = "studio"
    ONE_BR = "1br"
    TWO_BR = "2br"
    THREE_BR = "3br"
    FOUR_BR_PLUS = "4br_plus"


class HostType(str, Enum):
    """Who operates a listing."""

    INDIVIDUAL = "individual"
    PROPERTY_MANAGER = "property_manager"


def property_type_for_bedrooms(bedrooms: int) -> PropertyType:
    """Map a bedroom count to its property type bucket."""
    if bedrooms <= 0:
        return PropertyType.STUDIO
    if bedrooms == 1:
        return PropertyType.ONE_BR
    if bedrooms == 2:
        return PropertyType.TWO_BR
    if bedrooms == 3:
        return PropertyType.THREE_BR
    return PropertyType.FOUR_BR_PLUS


class ScrapedListing(BaseModel):
    """One listing as seen on one platform, normalized to the common shape.

    Every adapter turns its own search/detail responses into this model.
    The orchestrator persists it without knowing which platform produced it.
    """

    # Identification
    external_id: str = Field(..., min_length=1, description="Listing id on the source platform")
    platform: str = Field(..., description="Slug of the platform that produced the listing")
    title: str = Field(default="", description="Listing headline")
    url: str | None = Field(default=None, description="Public URL of the listing")

    # Classification
    property_type: PropertyType = Field(..., description="Bedroom bucket")
    host_type: HostType = Field(default=HostType.INDIVIDUAL, description="Individual host or manager")
    host_name: str | None = Field(default=None, description="Host display name")
    host_id: str | None = Field(default=None, description="Host identity on the platform")

    # Unit details
    bedrooms: int = Field(default=0, ge=0)
    bathrooms: float = Field(default=1, ge=0)
    max_guests: int = Field(default=2, ge=0)
    latitude: float | None = Field(default=None)
    longitude: float | None = Field(default=None)

    # Reputation
    rating: float | None = Field(default=None, ge=0, le=5)
    review_count: int = Field(default=0, ge=0)
    photo_count: int = Field(default=0, ge=0)
    amenities: list[str] = Field(default_factory=list)
    is_superhost: bool = Field(default=False)
    response_rate: int | None = Field(default=None, ge=0, le=100)
    instant_book: bool = Field(default=False)

    # Pricing
    nightly_rate: float | None = Field(default=None, ge=0)
    weekly_rate: float | None = Field(default=None, ge=0)
    monthly_rate: float | None = Field(default=None, ge=0)
    cleaning_fee: float | None = Field(default=None, ge=0)
    currency: str = Field(default="SAR")

    # Calendar sample (None when the calendar was not sampled)
    available_days: int | None = Field(default=None, ge=0)
    blocked_days: int | None = Field(default=None, ge=0)
    booked_days: int | None = Field(default=None, ge=0)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @property
    def has_price(self) -> bool:
        """Whether the listing carries a usable nightly rate."""
        return bool(self.nightly_rate)


class ScrapeResult(BaseModel):
    """What an adapter returns for one area."""

    listings: list[ScrapedListing] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = Field(default=0, ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_found(self) -> int:
        """Number of listings the adapter parsed successfully."""
        return len(self.listings)
