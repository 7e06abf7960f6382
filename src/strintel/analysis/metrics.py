"""Neighborhood market metrics.

For every active neighborhood and property type slice (plus "all"), computes
from stored snapshots and listings:

- ADR (average daily rate) over the trailing 7 days, plus 30/60/90-day ADR
- median, 25th and 75th percentile nightly rate (7-day window)
- occupancy estimated from sampled calendars (65% fallback without samples)
- RevPAR = ADR x occupancy / 100
- supply: total active listings, new listings in the last 7 days
- average rating

Rows are appended on every pass; readers use ``MarketDatabase.latest_metrics``.
"""

import logging
import math
from datetime import datetime, timedelta
from statistics import mean
from typing import Optional

from ..config import Settings, config as default_config
from ..models.market import (
    METRIC_PROPERTY_TYPES,
    DataConfidence,
    ListingRecord,
    Metric,
    PriceSnapshot,
)
from ..storage.database import MarketDatabase, as_utc, utcnow

logger = logging.getLogger(__name__)

ADR_WINDOW_DAYS = 7
OCCUPANCY_WINDOW_DAYS = 30
NEW_LISTING_DAYS = 7
LONGEST_WINDOW_DAYS = 90


def percentile(sorted_values: list[float], p: float) -> float:
    """Percentile with linear interpolation between closest ranks.

    Args:
        sorted_values: Values in ascending order
        p: Percentile in [0, 100]

    Returns:
        The interpolated value; 0 for an empty list
    """
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])

    index = (p / 100) * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])
    fraction = index - lower
    return float(sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction)


def classify_confidence(has_price: bool, has_occupancy: bool) -> DataConfidence:
    """Confidence of a metric row from the data it was built on."""
    if has_price and has_occupancy:
        return DataConfidence.REAL
    if has_price or has_occupancy:
        return DataConfidence.ESTIMATED
    return DataConfidence.DEFAULT


def positive_rates(snapshots: list[PriceSnapshot], since: datetime) -> list[float]:
    """Positive nightly rates of snapshots taken at or after ``since``."""
    return [
        s.nightly_rate
        for s in snapshots
        if s.nightly_rate and s.nightly_rate > 0 and s.snapshot_date >= since
    ]


def estimate_occupancy(
    snapshots: list[PriceSnapshot],
    default_rate: float = 65.0,
) -> tuple[float, bool]:
    """Occupancy percentage from calendar samples.

    Averages booked and available days over the snapshots that carry
    calendar data.

    Returns:
        (occupancy percentage, whether it came from calendar data)
    """
    samples = [
        s for s in snapshots if s.booked_days is not None and s.available_days is not None
    ]
    if not samples:
        return default_rate, False

    avg_booked = mean(s.booked_days for s in samples)
    avg_available = mean(s.available_days for s in samples)
    total = avg_booked + avg_available
    if total <= 0:
        return default_rate, False
    return avg_booked / total * 100, True


def compute_slice_metric(
    neighborhood_id: int,
    property_type: str,
    listings: list[ListingRecord],
    snapshots: list[PriceSnapshot],
    now: datetime,
    default_occupancy: float = 65.0,
) -> Metric:
    """Build the metric row for one neighborhood / property type slice.

    Args:
        neighborhood_id: Neighborhood of the slice
        property_type: Property type value or "all"
        listings: Active listings in the slice
        snapshots: Snapshots of those listings from the last 90 days
        now: Reference time for every window
        default_occupancy: Occupancy used without calendar samples
    """
    def adr_since(days: int) -> float:
        rates = positive_rates(snapshots, now - timedelta(days=days))
        return mean(rates) if rates else 0.0

    rates7 = sorted(positive_rates(snapshots, now - timedelta(days=ADR_WINDOW_DAYS)))
    adr = mean(rates7) if rates7 else 0.0

    recent = [s for s in snapshots if s.snapshot_date >= now - timedelta(days=OCCUPANCY_WINDOW_DAYS)]
    occupancy, has_occupancy = estimate_occupancy(recent, default_occupancy)

    ratings = [l.rating for l in listings if l.rating is not None]
    new_since = now - timedelta(days=NEW_LISTING_DAYS)

    return Metric(
        neighborhood_id=neighborhood_id,
        property_type=property_type,
        metric_date=now,
        period="daily",
        adr=round(adr, 2),
        adr30=round(adr_since(30), 2),
        adr60=round(adr_since(60), 2),
        adr90=round(adr_since(90), 2),
        occupancy_rate=round(occupancy, 2),
        revpar=round(adr * occupancy / 100, 2),
        total_listings=len(listings),
        new_listings=sum(1 for l in listings if l.first_seen >= new_since),
        avg_rating=round(mean(ratings), 2) if ratings else 0.0,
        median_price=round(percentile(rates7, 50), 2),
        price_p25=round(percentile(rates7, 25), 2),
        price_p75=round(percentile(rates7, 75), 2),
        data_confidence=classify_confidence(bool(rates7), has_occupancy),
    )


class MetricsEngine:
    """Compute and append metric rows for every market slice.

    Example:
        engine = MetricsEngine(db)
        rows = engine.update_metrics()
    """

    def __init__(self, database: MarketDatabase, settings: Optional[Settings] = None):
        self.db = database
        self.settings = settings or default_config

    def update_metrics(self, now: Optional[datetime] = None) -> list[Metric]:
        """Append one metric row per active neighborhood and property type.

        A failing slice is logged and skipped; the pass continues.

        Returns:
            The rows written
        """
        now = as_utc(now) if now else utcnow()
        since = now - timedelta(days=LONGEST_WINDOW_DAYS)
        written: list[Metric] = []

        for neighborhood in self.db.list_neighborhoods():
            for property_type in METRIC_PROPERTY_TYPES:
                try:
                    listings = self.db.list_listings(
                        neighborhood_id=neighborhood.id, property_type=property_type
                    )
                    snapshots = self.db.slice_snapshots(neighborhood.id, property_type, since)
                    metric = compute_slice_metric(
                        neighborhood.id,
                        property_type,
                        listings,
                        snapshots,
                        now,
                        self.settings.default_occupancy_rate,
                    )
                    metric.id = self.db.insert_metric(metric)
                    written.append(metric)
                except Exception as e:
                    logger.error(f"Metrics for {neighborhood.slug}/{property_type} failed: {e}")

        logger.info(f"Wrote {len(written)} metric rows")
        return written
