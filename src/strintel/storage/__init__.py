"""Storage modules for market data persistence.

This package provides the SQLite database shared by the scrape pipeline,
the aggregators and the read-side queries.
"""

from .database import MarketDatabase

__all__ = ["MarketDatabase"]
