"""Competitor detection across platforms.

A host operating several active listings is a portfolio operator. Listings
are grouped by platform host id across every platform, and each group above
the threshold is profiled and upserted by host id.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from statistics import mean
from typing import Optional

from ..config import Settings, config as default_config
from ..models.market import Competitor, ListingRecord
from ..storage.database import MarketDatabase, utcnow

logger = logging.getLogger(__name__)

# Trailing window for a competitor's average nightly rate
RATE_WINDOW_DAYS = 30


def build_competitor(
    host_id: str,
    listings: list[ListingRecord],
    avg_nightly_rate: float = 0.0,
) -> Competitor:
    """Profile one host from its active listings.

    Args:
        host_id: Platform host id shared by the listings
        listings: The host's active listings (any platform)
        avg_nightly_rate: Trailing average nightly rate across the listings

    Returns:
        Competitor (not yet persisted)
    """
    ratings = [l.rating for l in listings if l.rating is not None]
    host_name = next((l.host_name for l in listings if l.host_name), None)
    neighborhoods = Counter(str(l.neighborhood_id) for l in listings if l.neighborhood_id is not None)
    property_types = Counter(l.property_type.value for l in listings)

    return Competitor(
        host_id=host_id,
        host_name=host_name,
        platform_ids=sorted({l.platform_id for l in listings}),
        portfolio_size=len(listings),
        avg_rating=round(mean(ratings), 2) if ratings else 0.0,
        avg_review_count=round(mean(l.review_count for l in listings), 2),
        total_reviews=sum(l.review_count for l in listings),
        avg_nightly_rate=round(avg_nightly_rate, 2),
        neighborhoods=dict(neighborhoods),
        property_types=dict(property_types),
        is_superhost=any(l.is_superhost for l in listings),
    )


class CompetitorAggregator:
    """Recompute competitor profiles from the current listings.

    Example:
        aggregator = CompetitorAggregator(db)
        competitors = aggregator.update_competitors()
    """

    def __init__(self, database: MarketDatabase, settings: Optional[Settings] = None):
        """Initialize the aggregator.

        Args:
            database: Market database
            settings: Settings supplying the portfolio threshold
        """
        self.db = database
        self.settings = settings or default_config
        self.min_listings = self.settings.competitor_min_listings

    def group_by_host(self) -> dict[str, list[ListingRecord]]:
        """Active listings grouped by non-empty host id."""
        groups: dict[str, list[ListingRecord]] = defaultdict(list)
        for listing in self.db.list_hosted_listings():
            groups[listing.host_id].append(listing)
        return dict(groups)

    def update_competitors(self, now: Optional[datetime] = None) -> list[Competitor]:
        """Profile every host with at least ``min_listings`` active listings.

        Returns:
            The upserted competitors
        """
        now = now or utcnow()
        since = now - timedelta(days=RATE_WINDOW_DAYS)
        updated: list[Competitor] = []

        for host_id, listings in self.group_by_host().items():
            if len(listings) < self.min_listings:
                continue
            avg_rate = self.db.average_nightly_rate([l.id for l in listings], since)
            competitor = build_competitor(host_id, listings, avg_rate)
            updated.append(self.db.upsert_competitor(competitor, now=now))

        logger.info(f"Updated {len(updated)} competitor profiles")
        return updated
