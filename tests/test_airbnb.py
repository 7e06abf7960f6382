"""Tests for the Airbnb reference adapter."""

import httpx
import pytest

from strintel.collectors.airbnb import (
    AirbnbAdapter,
    analyze_calendar,
    bounds_for_area,
    parse_search_result,
)
from strintel.collectors.base import DataSourceError, FetchError
from strintel.collectors.fetch import HttpFetcher
from strintel.config import PlatformLimits, Settings
from strintel.models.listing import HostType, PropertyType
from strintel.models.market import BoundingBox, Neighborhood


def search_item(listing_id, bedrooms=1, listings_count=1, amount=350, host_id=77, **listing):
    return {
        "listing": {
            "id": listing_id,
            "name": f"Flat {listing_id}",
            "bedrooms": bedrooms,
            "bathrooms": 1,
            "person_capacity": 3,
            "lat": 24.69,
            "lng": 46.68,
            "avg_rating": 4.8,
            "reviews_count": 12,
            "picture_count": 20,
            "preview_amenity_names": ["Wifi", "Pool"],
            "user": {"id": host_id, "first_name": "Sara", "listings_count": listings_count},
            **listing,
        },
        "pricing_quote": {
            "rate": {"amount": amount},
            "weekly_price_factor": 0.9,
            "monthly_price_factor": 0.75,
        },
    }


def search_page(items, next_offset=None):
    return {
        "explore_tabs": [
            {
                "sections": [{"listings": items}],
                "pagination_metadata": {
                    "has_next_page": next_offset is not None,
                    "items_offset": next_offset,
                },
            }
        ]
    }


def calendar(available, unavailable):
    days = [{"date": f"d{i}", "available": True} for i in range(available)]
    days += [{"date": f"u{i}", "available": False} for i in range(unavailable)]
    return {"calendar_months": [{"days": days}]}


@pytest.fixture
def area() -> Neighborhood:
    return Neighborhood(
        id=1,
        slug="al-olaya",
        name="Al Olaya",
        latitude=24.69,
        longitude=46.685,
        bounding_box=BoundingBox(ne_lat=24.71, ne_lng=46.695, sw_lat=24.685, sw_lng=46.67),
    )


def make_adapter(handler, tmp_path, **settings_overrides) -> AirbnbAdapter:
    settings = Settings(database_path=tmp_path / "x.db", **settings_overrides)
    limits = PlatformLimits(max_concurrent=2, delay_seconds=0, base_delay_seconds=0, jitter_seconds=0)
    fetcher = HttpFetcher("airbnb", limits, transport=httpx.MockTransport(handler))
    return AirbnbAdapter(fetcher, settings)


class TestParseSearchResult:
    """Test mapping of raw search results."""

    def test_basic_fields(self):
        """Fields map onto the normalized listing."""
        listing = parse_search_result(search_item(123, bedrooms=2))

        assert listing.external_id == "123"
        assert listing.platform == "airbnb"
        assert listing.url == "https://www.airbnb.com/rooms/123"
        assert listing.property_type == PropertyType.TWO_BR
        assert listing.host_id == "77"
        assert listing.nightly_rate == 350
        assert listing.weekly_rate == pytest.approx(350 * 7 * 0.9)
        assert listing.monthly_rate == pytest.approx(350 * 30 * 0.75)
        assert listing.amenities == ["Wifi", "Pool"]

    def test_host_with_many_listings_is_manager(self):
        """Hosts with three or more listings are property managers."""
        assert parse_search_result(search_item(1, listings_count=3)).host_type == HostType.PROPERTY_MANAGER
        assert parse_search_result(search_item(2, listings_count=2)).host_type == HostType.INDIVIDUAL

    def test_studio_and_large_units(self):
        """Zero bedrooms is a studio; four or more is 4br_plus."""
        assert parse_search_result(search_item(1, bedrooms=0)).property_type == PropertyType.STUDIO
        assert parse_search_result(search_item(2, bedrooms=6)).property_type == PropertyType.FOUR_BR_PLUS

    def test_missing_id_skipped(self):
        """Results without a listing id are ignored."""
        assert parse_search_result({"listing": {"name": "ghost"}}) is None

    def test_price_from_string(self):
        """A formatted price string is used when no numeric rate exists."""
        item = search_item(5)
        item["pricing_quote"] = {"price_string": "SAR 1,250"}

        listing = parse_search_result(item)

        assert listing.nightly_rate == 1250
        assert listing.weekly_rate is None


class TestCalendar:
    """Test calendar analysis."""

    def test_counts(self):
        """Booked days are 70% of blocked days."""
        assert analyze_calendar(calendar(10, 10)["calendar_months"][0]["days"]) == (10, 10, 7)

    def test_rounds_half_up(self):
        """5 blocked days -> 3.5 -> 4 booked."""
        assert analyze_calendar(calendar(0, 5)["calendar_months"][0]["days"]) == (0, 5, 4)


class TestBounds:
    """Test search rectangle selection."""

    def test_uses_bounding_box(self, area):
        """The stored box is used as-is."""
        assert bounds_for_area(area) == area.bounding_box

    def test_radius_around_center(self, area):
        """A radius builds a box around the center."""
        box = bounds_for_area(area, radius_km=1.11)

        assert box.ne_lat == pytest.approx(24.70)
        assert box.sw_lat == pytest.approx(24.68)
        assert box.ne_lng > area.longitude > box.sw_lng

    def test_no_location(self):
        """An area with neither box nor center cannot be searched."""
        with pytest.raises(DataSourceError):
            bounds_for_area(Neighborhood(id=9, slug="nowhere", name="Nowhere"))


class TestScrapeArea:
    """Test the full search, pagination and calendar flow."""

    @pytest.mark.asyncio
    async def test_paginates_and_samples_calendars(self, area, tmp_path):
        """Two pages are merged and the first listings get calendar data."""
        pages = {
            "0": search_page([search_item(1), search_item(2)], next_offset=18),
            "18": search_page([search_item(3), search_item(2)]),
        }
        requested_offsets = []

        def handler(request):
            if request.url.path.endswith("explore_tabs"):
                offset = request.url.params.get("items_offset", "0")
                requested_offsets.append(offset)
                return httpx.Response(200, json=pages[offset])
            return httpx.Response(200, json=calendar(10, 10))

        adapter = make_adapter(handler, tmp_path, calendar_sample_size=2)
        result = await adapter.scrape_area(area)
        await adapter.close()

        assert requested_offsets == ["0", "18"]
        assert [l.external_id for l in result.listings] == ["1", "2", "3"]
        assert result.total_found == 3
        assert result.errors == []
        assert result.listings[0].booked_days == 7
        assert result.listings[1].available_days == 10
        assert result.listings[2].available_days is None

    @pytest.mark.asyncio
    async def test_first_page_failure_raises(self, area, tmp_path):
        """Without any search page the area is unusable."""

        def handler(request):
            return httpx.Response(403)

        adapter = make_adapter(handler, tmp_path)
        with pytest.raises(FetchError):
            await adapter.scrape_area(area)
        await adapter.close()

    @pytest.mark.asyncio
    async def test_later_failures_recorded(self, area, tmp_path):
        """A failing second page and calendar are recorded, not raised."""

        def handler(request):
            if request.url.path.endswith("explore_tabs"):
                if "items_offset" in request.url.params:
                    return httpx.Response(404)
                return httpx.Response(200, json=search_page([search_item(1)], next_offset=18))
            return httpx.Response(404)

        adapter = make_adapter(handler, tmp_path, calendar_sample_size=5)
        result = await adapter.scrape_area(area)
        await adapter.close()

        assert result.total_found == 1
        assert len(result.errors) == 2
        assert result.errors[0].startswith("Search page 1 failed")
        assert result.errors[1].startswith("Calendar fetch failed for 1")

    @pytest.mark.asyncio
    async def test_bad_result_recorded(self, area, tmp_path):
        """A result failing validation is recorded and skipped."""
        bad = search_item(9)
        bad["listing"]["avg_rating"] = 42

        def handler(request):
            if request.url.path.endswith("explore_tabs"):
                return httpx.Response(200, json=search_page([bad, search_item(1)]))
            return httpx.Response(200, json=calendar(5, 0))

        adapter = make_adapter(handler, tmp_path)
        result = await adapter.scrape_area(area)
        await adapter.close()

        assert [l.external_id for l in result.listings] == ["1"]
        assert result.errors[0].startswith("Failed to parse listing 9")
