"""Market analysis modules.

This package derives competitor portfolios and neighborhood statistics
(ADR, occupancy, RevPAR, price percentiles) from the stored listings and
price snapshots.
"""

from .competitors import CompetitorAggregator
from .metrics import MetricsEngine, classify_confidence, percentile

__all__ = ["CompetitorAggregator", "MetricsEngine", "classify_confidence", "percentile"]
