"""Airbnb reference adapter.

Searches Airbnb's explore_tabs JSON API by map bounding box, paginates with
``items_offset`` and samples availability calendars for occupancy estimates.
All requests go through the platform's HttpFetcher.

Note: Airbnb's internal endpoints change without notice. The parsing is kept
tolerant: missing fields fall back to defaults and one bad result only adds
an entry to ``ScrapeResult.errors``.
"""

import logging
import math
import time
from datetime import date
from typing import Any, Optional

from ..config import Settings, config as default_config
from ..models.listing import (
    HostType,
    ScrapedListing,
    ScrapeResult,
    property_type_for_bedrooms,
)
from ..models.market import BoundingBox, Neighborhood
from .base import DataSourceError, PlatformAdapter
from .fetch import HttpFetcher

logger = logging.getLogger(__name__)

# Public key the Airbnb web client sends with API calls
AIRBNB_API_KEY = "d306zoyjsyarp7ifhu67rjxn52tv0t20"

# Hosts with at least this many listings are treated as managers
MANAGER_LISTINGS_THRESHOLD = 3

# Share of blocked calendar days assumed to be real bookings
BOOKED_SHARE_OF_BLOCKED = 0.7

DEFAULT_RADIUS_KM = 3.0
KM_PER_DEGREE = 111.0


def bounds_for_area(area: Neighborhood, radius_km: Optional[float] = None) -> BoundingBox:
    """Search rectangle for an area.

    Uses the stored bounding box unless a radius is requested, in which case
    a box is built around the center point.
    """
    if area.bounding_box is not None and radius_km is None:
        return area.bounding_box
    if area.latitude is None or area.longitude is None:
        raise DataSourceError("airbnb", f"Neighborhood {area.slug} has no bounding box or center")

    radius = radius_km or DEFAULT_RADIUS_KM
    lat_delta = radius / KM_PER_DEGREE
    lng_delta = radius / (KM_PER_DEGREE * math.cos(math.radians(area.latitude)))
    return BoundingBox(
        ne_lat=area.latitude + lat_delta,
        ne_lng=area.longitude + lng_delta,
        sw_lat=area.latitude - lat_delta,
        sw_lng=area.longitude - lng_delta,
    )


def analyze_calendar(days: list[dict[str, Any]]) -> tuple[int, int, int]:
    """Count (available, blocked, booked) days in a calendar sample.

    Airbnb does not distinguish bookings from owner blocks, so booked days
    are estimated as 70% of blocked days, rounded half up.
    """
    available = sum(1 for day in days if day.get("available"))
    blocked = len(days) - available
    booked = int(blocked * BOOKED_SHARE_OF_BLOCKED + 0.5)
    return available, blocked, booked


def _parse_amount(value: Any) -> Optional[float]:
    """Numeric amount from a number or a formatted price string."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    cleaned = "".join(c for c in str(value) if c.isdigit() or c == ".")
    try:
        amount = float(cleaned)
    except ValueError:
        return None
    return amount if amount > 0 else None


def parse_search_result(result: dict[str, Any], currency: str = "SAR") -> Optional[ScrapedListing]:
    """Turn one explore_tabs result into a ScrapedListing.

    Returns None for results without a listing id.
    """
    listing = result.get("listing") or {}
    listing_id = listing.get("id")
    if not listing_id:
        return None

    user = listing.get("user") or {}
    pricing = result.get("pricing_quote") or result.get("pricingQuote") or {}

    nightly_rate = _parse_amount((pricing.get("rate") or {}).get("amount"))
    if nightly_rate is None:
        nightly_rate = _parse_amount(pricing.get("price_string") or pricing.get("priceString"))

    weekly_rate = None
    monthly_rate = None
    if nightly_rate is not None:
        if pricing.get("weekly_price_factor"):
            weekly_rate = round(nightly_rate * 7 * pricing["weekly_price_factor"], 2)
        if pricing.get("monthly_price_factor"):
            monthly_rate = round(nightly_rate * 30 * pricing["monthly_price_factor"], 2)

    bedrooms = int(listing.get("bedrooms") or 0)
    is_manager = (user.get("listings_count") or 0) >= MANAGER_LISTINGS_THRESHOLD
    rating = listing.get("avg_rating") or listing.get("star_rating") or None
    host_id = user.get("id")

    return ScrapedListing(
        external_id=str(listing_id),
        platform="airbnb",
        title=listing.get("name") or f"Airbnb {listing_id}",
        url=f"https://www.airbnb.com/rooms/{listing_id}",
        property_type=property_type_for_bedrooms(bedrooms),
        host_type=HostType.PROPERTY_MANAGER if is_manager else HostType.INDIVIDUAL,
        host_name=user.get("first_name"),
        host_id=str(host_id) if host_id else None,
        bedrooms=bedrooms,
        bathrooms=listing.get("bathrooms") or 1,
        max_guests=listing.get("person_capacity") or 2,
        latitude=listing.get("lat"),
        longitude=listing.get("lng"),
        rating=rating,
        review_count=listing.get("reviews_count") or 0,
        photo_count=listing.get("picture_count") or len(listing.get("photos") or []),
        amenities=listing.get("preview_amenity_names") or [],
        is_superhost=bool(listing.get("is_superhost") or user.get("is_superhost")),
        response_rate=user.get("response_rate"),
        instant_book=bool(listing.get("instant_bookable")),
        nightly_rate=nightly_rate,
        weekly_rate=weekly_rate,
        monthly_rate=monthly_rate,
        currency=currency,
    )


class AirbnbAdapter(PlatformAdapter):
    """Adapter for Airbnb search and calendar endpoints.

    Attributes:
        slug: "airbnb"

    Example:
        adapter = AirbnbAdapter(HttpFetcher("airbnb"))
        result = await adapter.scrape_area(neighborhood)
    """

    slug = "airbnb"

    SEARCH_URL = "https://www.airbnb.com/api/v2/explore_tabs"
    CALENDAR_URL = "https://www.airbnb.com/api/v2/calendar_months"
    ITEMS_PER_PAGE = 18

    def __init__(self, fetcher: HttpFetcher, settings: Optional[Settings] = None):
        """Initialize the adapter.

        Args:
            fetcher: The platform's HttpFetcher
            settings: Settings supplying page limit, calendar sample size and currency
        """
        super().__init__(fetcher)
        settings = settings or default_config
        self.max_pages = settings.max_search_pages
        self.calendar_sample_size = settings.calendar_sample_size
        self.currency = settings.currency

    def _headers(self) -> dict[str, str]:
        return {
            "X-Airbnb-API-Key": AIRBNB_API_KEY,
            "Referer": "https://www.airbnb.com/s/Riyadh--Saudi-Arabia/homes",
            "Origin": "https://www.airbnb.com",
        }

    async def search_page(
        self, bounds: BoundingBox, offset: int = 0
    ) -> tuple[list[dict[str, Any]], Optional[int]]:
        """Fetch one search page.

        Returns:
            (raw results, offset of the next page or None on the last page)
        """
        params: dict[str, Any] = {
            "_format": "for_explore_search_web",
            "currency": self.currency,
            "locale": "en",
            "items_per_grid": self.ITEMS_PER_PAGE,
            "key": AIRBNB_API_KEY,
            "ne_lat": bounds.ne_lat,
            "ne_lng": bounds.ne_lng,
            "sw_lat": bounds.sw_lat,
            "sw_lng": bounds.sw_lng,
            "search_by_map": "true",
            "search_type": "filter",
            "query": "Riyadh, Saudi Arabia",
        }
        if offset:
            params["items_offset"] = offset

        data = await self.fetcher.fetch_json(self.SEARCH_URL, params=params, headers=self._headers())

        results: list[dict[str, Any]] = []
        next_offset: Optional[int] = None
        for tab in data.get("explore_tabs") or []:
            for section in tab.get("sections") or []:
                results.extend(section.get("listings") or [])
            pagination = tab.get("pagination_metadata") or {}
            if pagination.get("has_next_page"):
                next_offset = pagination.get("items_offset")
        return results, next_offset

    async def fetch_calendar(self, listing_id: str, today: Optional[date] = None) -> list[dict[str, Any]]:
        """Fetch the next three months of calendar days for a listing."""
        today = today or date.today()
        data = await self.fetcher.fetch_json(
            self.CALENDAR_URL,
            params={
                "listing_id": listing_id,
                "month": today.month,
                "year": today.year,
                "count": 3,
                "key": AIRBNB_API_KEY,
                "currency": self.currency,
            },
            headers=self._headers(),
        )
        days: list[dict[str, Any]] = []
        for month in data.get("calendar_months") or []:
            days.extend(month.get("days") or [])
        return days

    async def scrape_area(
        self,
        area: Neighborhood,
        radius_km: Optional[float] = None,
    ) -> ScrapeResult:
        """Search an area page by page, then sample calendars.

        A failure on the first page makes the area unusable and is raised.
        Failures on later pages stop pagination and are recorded.
        """
        start = time.monotonic()
        bounds = bounds_for_area(area, radius_km)
        listings: list[ScrapedListing] = []
        errors: list[str] = []
        seen: set[str] = set()

        offset = 0
        for page in range(self.max_pages):
            try:
                results, next_offset = await self.search_page(bounds, offset)
            except DataSourceError as e:
                if page == 0:
                    raise
                errors.append(f"Search page {page} failed: {e}")
                logger.warning(f"Airbnb search page {page} for {area.slug} failed: {e}")
                break

            for result in results:
                try:
                    scraped = parse_search_result(result, self.currency)
                except (ValueError, TypeError) as e:
                    listing_id = (result.get("listing") or {}).get("id")
                    errors.append(f"Failed to parse listing {listing_id}: {e}")
                    continue
                if scraped is None or scraped.external_id in seen:
                    continue
                seen.add(scraped.external_id)
                listings.append(scraped)

            if not results or next_offset is None:
                break
            offset = next_offset

        for listing in listings[: self.calendar_sample_size]:
            try:
                days = await self.fetch_calendar(listing.external_id)
            except DataSourceError as e:
                errors.append(f"Calendar fetch failed for {listing.external_id}: {e}")
                continue
            if days:
                available, blocked, booked = analyze_calendar(days)
                listing.available_days = available
                listing.blocked_days = blocked
                listing.booked_days = booked

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Airbnb {area.slug}: {len(listings)} listings, {len(errors)} errors in {duration_ms}ms"
        )
        return ScrapeResult(listings=listings, errors=errors, duration_ms=duration_ms)
