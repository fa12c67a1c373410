"""Marketplace scrapers and the browser/proxy infrastructure they run on."""

from pricewatch.scrapers.base import (
    Availability,
    BaseMarketplaceScraper,
    Marketplace,
    ScrapedProduct,
    ScrapeTarget,
    SellerType,
)

__all__ = [
    "Availability",
    "BaseMarketplaceScraper",
    "Marketplace",
    "ScrapedProduct",
    "ScrapeTarget",
    "SellerType",
]
