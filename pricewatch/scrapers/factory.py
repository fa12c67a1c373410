"""Registry of marketplace scrapers keyed by the Marketplace enum."""

from typing import Dict, List, Optional

import structlog

from pricewatch.core.exceptions import PermanentParseError
from pricewatch.scrapers.base import (
    BaseMarketplaceScraper,
    Marketplace,
    ScrapeTarget,
    marketplace_from_value,
)

logger = structlog.get_logger(__name__)


class ScraperRegistry:
    """Holds one scraper instance per marketplace.

    Dispatch is always by ``Marketplace``; URL sniffing is only used to find
    the marketplace of a URL that has not been parsed yet.
    """

    def __init__(self):
        self._scrapers: Dict[Marketplace, BaseMarketplaceScraper] = {}

    def register(self, scraper: BaseMarketplaceScraper) -> None:
        """Register a scraper instance under its marketplace.

        Args:
            scraper: Scraper instance (must inherit from BaseMarketplaceScraper)
        """
        if not isinstance(scraper, BaseMarketplaceScraper):
            raise ValueError(f"Scraper must inherit from BaseMarketplaceScraper: {scraper!r}")
        self._scrapers[scraper.marketplace] = scraper
        logger.debug("scraper_registered", marketplace=scraper.marketplace.value)

    def get(self, marketplace) -> BaseMarketplaceScraper:
        """Look up the scraper for a marketplace.

        Raises:
            PermanentParseError: If no scraper handles the marketplace
        """
        key = marketplace_from_value(marketplace)
        scraper = self._scrapers.get(key)
        if scraper is None:
            raise PermanentParseError(str(marketplace), key.value)
        return scraper

    def detect_marketplace(self, url: str) -> Optional[Marketplace]:
        for marketplace, scraper in self._scrapers.items():
            if scraper.recognize(url):
                return marketplace
        return None

    def for_url(self, url: str) -> BaseMarketplaceScraper:
        marketplace = self.detect_marketplace(url)
        if marketplace is None:
            raise PermanentParseError(url)
        return self._scrapers[marketplace]

    def parse_url(self, url: str) -> ScrapeTarget:
        """Parse any supported product URL.

        Raises:
            PermanentParseError: If the URL matches no known marketplace pattern
        """
        return self.for_url(url).parse_url(url)

    def marketplaces(self) -> List[Marketplace]:
        return list(self._scrapers)

    def supported_patterns(self) -> Dict[str, List[str]]:
        return {
            marketplace.value: [p.pattern for p in scraper.url_patterns]
            for marketplace, scraper in self._scrapers.items()
        }


def build_default_registry(settings=None, wait_timeout_ms: int = 10000) -> ScraperRegistry:
    """Create a registry holding the Amazon, Etsy and Otto scrapers."""
    from pricewatch.scrapers.adapters import AmazonScraper, EtsyScraper, OttoScraper

    etsy_api_key = settings.ETSY_API_KEY if settings is not None else ""

    registry = ScraperRegistry()
    registry.register(AmazonScraper(wait_timeout_ms=wait_timeout_ms))
    registry.register(EtsyScraper(api_key=etsy_api_key, wait_timeout_ms=wait_timeout_ms))
    registry.register(OttoScraper(wait_timeout_ms=wait_timeout_ms))
    return registry
