"""Base scraper interface."""

from abc import ABC, abstractmethod

from staymerge.models import Platform, ScrapedListing


class BaseScraper(ABC):
    """Abstract base class for listing scrapers.

    Site-specific scraping lives outside this package; implementations are
    registered with the listing service per platform and used to refresh
    stored listings from their source URL.
    """

    @property
    @abstractmethod
    def platform(self) -> Platform:
        """Return the platform this scraper handles."""
        ...

    @abstractmethod
    async def scrape(self, url: str) -> ScrapedListing:
        """Scrape a single listing page.

        Args:
            url: Listing URL on this scraper's platform.

        Returns:
            The scraped listing. Image entries carry the source URL in
            ``original`` and, when the scraper saved a copy, its ``local`` path.
        """
        ...

    async def close(self) -> None:  # noqa: B027
        """Clean up scraper resources (e.g. HTTP sessions)."""
