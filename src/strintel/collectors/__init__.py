"""Platform data collection framework.

This module collects STR listings from multiple OTAs (Airbnb, Gathern,
Booking.com, Agoda) through a plugin architecture.

Main Components:
    - PlatformAdapter: Abstract base class for all platform adapters
    - HttpFetcher: Rate-limited, proxy-rotating HTTP client per platform
    - AdapterRegistry: Lookup table from platform slug to adapter factory
    - ScrapeOrchestrator: Runs the (platform x neighborhood) scrape matrix

Example usage:
    from strintel.collectors import ScrapeOrchestrator, default_registry

    orchestrator = ScrapeOrchestrator(db, default_registry(), config)
    result = await orchestrator.run_scrape_job()
"""

from .airbnb import AirbnbAdapter
from .base import DataSourceError, FetchError, PlatformAdapter, RateLimitError
from .fetch import HttpFetcher, ProxyConfig, ProxyManager, RateLimiter, with_retry
from .orchestrator import ScrapeInProgressError, ScrapeOrchestrator
from .registry import AdapterNotFoundError, AdapterRegistry, default_registry

__all__ = [
    "PlatformAdapter",
    "DataSourceError",
    "FetchError",
    "RateLimitError",
    "HttpFetcher",
    "ProxyConfig",
    "ProxyManager",
    "RateLimiter",
    "with_retry",
    "AdapterRegistry",
    "AdapterNotFoundError",
    "default_registry",
    "AirbnbAdapter",
    "ScrapeOrchestrator",
    "ScrapeInProgressError",
]
