"""Lookup table from platform slug to adapter factory.

New platforms are added by registering a factory; nothing in the
orchestrator changes.

Example:
    registry = default_registry()
    registry.register("gathern", GathernAdapter)
    adapter = registry.create(platform, config)
"""

import logging
from typing import Callable, Optional

import httpx

from ..config import PlatformLimits, Settings
from ..models.market import Platform
from .base import PlatformAdapter
from .fetch import HttpFetcher

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., PlatformAdapter]


class AdapterNotFoundError(LookupError):
    """Raised when no adapter is registered for a platform slug."""

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"No adapter registered for platform '{slug}'")


class AdapterRegistry:
    """Registry of adapter factories keyed by platform slug.

    A factory is called as ``factory(fetcher, settings)`` and returns a
    ready adapter. Adapter classes whose ``__init__`` has that signature can
    be registered directly.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize an empty registry.

        Args:
            transport: Optional httpx transport handed to every fetcher created
        """
        self._factories: dict[str, AdapterFactory] = {}
        self._transport = transport

    def register(self, slug: str, factory: AdapterFactory) -> None:
        """Register (or replace) the factory for a platform slug."""
        if slug in self._factories:
            logger.debug(f"Replacing adapter factory for {slug}")
        self._factories[slug] = factory

    def unregister(self, slug: str) -> bool:
        """Remove a factory. Returns True if one was registered."""
        return self._factories.pop(slug, None) is not None

    def get(self, slug: str) -> AdapterFactory:
        """Factory for a slug.

        Raises:
            AdapterNotFoundError: If the slug is not registered
        """
        try:
            return self._factories[slug]
        except KeyError:
            raise AdapterNotFoundError(slug) from None

    def __contains__(self, slug: object) -> bool:
        return slug in self._factories

    def slugs(self) -> list[str]:
        """Registered platform slugs, sorted."""
        return sorted(self._factories)

    def create(self, platform: Platform, settings: Settings) -> PlatformAdapter:
        """Build an adapter with its own fetcher for a platform.

        The fetcher's limits are the global settings merged with the
        platform's ``scrape_config``, so every platform gets an independent
        rate limiter and proxy pool.
        """
        factory = self.get(platform.slug)
        limits = PlatformLimits.from_settings(settings, platform.scrape_config)
        fetcher = HttpFetcher(platform.slug, limits, transport=self._transport)
        logger.debug(
            f"Created {platform.slug} adapter "
            f"(max_concurrent={limits.max_concurrent}, delay={limits.delay_seconds}s, "
            f"proxies={len(limits.proxies)})"
        )
        return factory(fetcher, settings)


def default_registry(transport: Optional[httpx.AsyncBaseTransport] = None) -> AdapterRegistry:
    """Registry with every adapter shipped in this package."""
    from .airbnb import AirbnbAdapter

    registry = AdapterRegistry(transport=transport)
    registry.register(AirbnbAdapter.slug, AirbnbAdapter)
    return registry
