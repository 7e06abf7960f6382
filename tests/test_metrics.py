"""Tests for the metrics engine."""

from datetime import timedelta

import pytest
from conftest import NOW, make_listing

from strintel.analysis.metrics import (
    MetricsEngine,
    classify_confidence,
    compute_slice_metric,
    estimate_occupancy,
    percentile,
)
from strintel.models.market import DataConfidence, PriceSnapshot


def snapshot(rate, days_ago=1, booked=None, available=None, listing_id=1):
    return PriceSnapshot(
        id=1,
        listing_id=listing_id,
        snapshot_date=NOW - timedelta(days=days_ago),
        nightly_rate=rate,
        booked_days=booked,
        available_days=available,
    )


class TestPercentile:
    """Test linear-interpolation percentiles."""

    def test_interpolates(self):
        """Quartiles of four evenly spaced values."""
        values = [100, 200, 300, 400]

        assert percentile(values, 25) == 175
        assert percentile(values, 50) == 250
        assert percentile(values, 75) == 325

    def test_single_and_empty(self):
        """One value is every percentile; no values give zero."""
        assert percentile([500], 25) == 500
        assert percentile([], 50) == 0


class TestConfidence:
    """Test data confidence classification."""

    @pytest.mark.parametrize(
        "has_price,has_occupancy,expected",
        [
            (True, True, DataConfidence.REAL),
            (True, False, DataConfidence.ESTIMATED),
            (False, True, DataConfidence.ESTIMATED),
            (False, False, DataConfidence.DEFAULT),
        ],
    )
    def test_classification(self, has_price, has_occupancy, expected):
        assert classify_confidence(has_price, has_occupancy) == expected


class TestOccupancy:
    """Test occupancy estimation from calendar samples."""

    def test_from_calendar(self):
        """Booked over booked plus available days."""
        rate, observed = estimate_occupancy([snapshot(250, booked=7, available=3)])

        assert rate == pytest.approx(70)
        assert observed is True

    def test_fallback_without_samples(self):
        """No calendar data means the configured default."""
        assert estimate_occupancy([snapshot(250)], default_rate=65) == (65, False)

    def test_fallback_on_empty_calendar(self):
        """A calendar with zero days is not evidence of occupancy."""
        assert estimate_occupancy([snapshot(250, booked=0, available=0)], default_rate=50) == (50, False)


class TestComputeSliceMetric:
    """Test one slice's statistics."""

    def test_real_slice(self, seeded_db, alpha, n1):
        """Prices and calendars give a real-confidence row."""
        seeded_db.upsert_listing(make_listing("a", rating=4.5), alpha.id, n1.id, now=NOW - timedelta(days=2))
        listings = seeded_db.list_listings()

        metric = compute_slice_metric(
            n1.id, "all", listings, [snapshot(250, booked=7, available=3)], NOW
        )

        assert metric.adr == 250
        assert metric.occupancy_rate == 70
        assert metric.revpar == 175
        assert metric.median_price == 250
        assert metric.total_listings == 1
        assert metric.new_listings == 1
        assert metric.avg_rating == 4.5
        assert metric.data_confidence == DataConfidence.REAL

    def test_windows(self):
        """Older snapshots count toward the longer ADR windows only."""
        snapshots = [snapshot(100, days_ago=1), snapshot(300, days_ago=20), snapshot(500, days_ago=80)]

        metric = compute_slice_metric(1, "all", [], snapshots, NOW)

        assert metric.adr == 100
        assert metric.adr30 == 200
        assert metric.adr60 == 200
        assert metric.adr90 == 300
        assert metric.occupancy_rate == 65
        assert metric.data_confidence == DataConfidence.ESTIMATED

    def test_empty_slice(self):
        """No data at all yields zeros, the default occupancy and default confidence."""
        metric = compute_slice_metric(1, "studio", [], [], NOW, default_occupancy=60)

        assert metric.adr == 0
        assert metric.revpar == 0
        assert metric.occupancy_rate == 60
        assert metric.data_confidence == DataConfidence.DEFAULT


class TestMetricsEngine:
    """Test the full metrics pass."""

    def test_one_row_per_slice(self, seeded_db, settings, alpha, n1):
        """Each neighborhood gets "all" plus one row per property type."""
        listing_id, _ = seeded_db.upsert_listing(make_listing("a", bedrooms=2), alpha.id, n1.id, now=NOW)
        seeded_db.insert_price_snapshot(listing_id, make_listing("a", nightly_rate=600), None, now=NOW)

        rows = MetricsEngine(seeded_db, settings).update_metrics(now=NOW)

        assert len(rows) == 2 * 6
        n1_rows = {m.property_type: m for m in rows if m.neighborhood_id == n1.id}
        assert set(n1_rows) == {"all", "studio", "1br", "2br", "3br", "4br_plus"}
        assert n1_rows["all"].adr == 600
        assert n1_rows["2br"].adr == 600
        assert n1_rows["1br"].adr == 0
        assert n1_rows["1br"].data_confidence == DataConfidence.DEFAULT

    def test_rows_are_appended(self, seeded_db, settings, n1):
        """Two passes append; latest_metrics de-duplicates."""
        engine = MetricsEngine(seeded_db, settings)

        engine.update_metrics(now=NOW)
        engine.update_metrics(now=NOW + timedelta(hours=1))

        assert len(seeded_db.list_metrics(neighborhood_id=n1.id)) == 12
        assert len(seeded_db.latest_metrics(neighborhood_id=n1.id)) == 6

    def test_failing_slice_is_isolated(self, seeded_db, settings, n1, monkeypatch):
        """A slice that raises is skipped; the other slices are written."""
        original = seeded_db.slice_snapshots

        def flaky(neighborhood_id, property_type, since):
            if property_type == "studio":
                raise RuntimeError("disk I/O error")
            return original(neighborhood_id, property_type, since)

        monkeypatch.setattr(seeded_db, "slice_snapshots", flaky)

        rows = MetricsEngine(seeded_db, settings).update_metrics(now=NOW)

        assert len(rows) == 2 * 5
        assert "studio" not in {m.property_type for m in rows}
