"""Abstract base class for OTA platform adapters.

Every supported booking platform (Airbnb, Gathern, Booking.com, Agoda, ...)
is wrapped by a PlatformAdapter that turns one geographic area into a
normalized ScrapeResult. The orchestrator only ever talks to this interface,
so adding a platform means writing an adapter and registering it.

Example usage:
    class MyAdapter(PlatformAdapter):
        slug = "my_platform"

        async def scrape_area(self, area, radius_km=None):
            data = await self.fetcher.fetch_json(SEARCH_URL, params={...})
            return ScrapeResult(listings=[...])
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from ..models.listing import ScrapeResult
from ..models.market import Neighborhood

if TYPE_CHECKING:
    from .fetch import HttpFetcher


class PlatformAdapter(ABC):
    """Abstract base class for platform adapters.

    Adapters must perform all network I/O through their ``HttpFetcher`` so the
    platform's rate limiter, proxy pool and retry policy always apply.

    Attributes:
        slug: Platform slug this adapter serves (matches ``Platform.slug``)
        fetcher: The platform's rate-limited HTTP fetcher

    Contract:
    1. ``scrape_area`` returns whatever it managed to parse
    2. Per-page or per-listing failures are appended to ``ScrapeResult.errors``
    3. Only failures that make the whole area unusable are raised
    """

    slug: str

    def __init__(self, fetcher: HttpFetcher):
        self.fetcher = fetcher

    @abstractmethod
    async def scrape_area(
        self,
        area: Neighborhood,
        radius_km: Optional[float] = None,
    ) -> ScrapeResult:
        """Collect every listing the platform exposes for one area.

        Args:
            area: Neighborhood to search (bounding box or center point)
            radius_km: Optional search radius around the center point

        Returns:
            ScrapeResult with parsed listings and recoverable errors

        Raises:
            DataSourceError: If the area cannot be searched at all
        """
        pass

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        await self.fetcher.close()


class DataSourceError(Exception):
    """Base exception for platform errors.

    Attributes:
        source: Slug of the platform that raised the error
        message: Error description
    """

    def __init__(self, source: str, message: str):
        self.source = source
        self.message = message
        super().__init__(f"[{source}] {message}")


class FetchError(DataSourceError):
    """Raised when a request still fails after every retry attempt.

    Attributes:
        url: Requested URL
        attempts: Number of attempts made
        status_code: Last HTTP status, if a response was received
    """

    def __init__(
        self,
        source: str,
        url: str,
        message: str,
        attempts: int = 1,
        status_code: Optional[int] = None,
    ):
        self.url = url
        self.attempts = attempts
        self.status_code = status_code
        super().__init__(source, f"{message} ({url}, {attempts} attempt(s))")


class RateLimitError(FetchError):
    """Raised when a platform keeps answering 429 after every retry."""

    def __init__(
        self,
        source: str,
        url: str,
        retry_after: Optional[int] = None,
        attempts: int = 1,
    ):
        self.retry_after = retry_after
        message = "Rate limit exceeded"
        if retry_after:
            message += f" (retry after {retry_after}s)"
        super().__init__(source, url, message, attempts=attempts, status_code=429)
