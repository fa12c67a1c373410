"""Marketplace-specific scraper implementations.

Each module implements a class that inherits from BaseMarketplaceScraper.
"""

from .amazon import AmazonScraper
from .etsy import EtsyScraper
from .otto import OttoScraper

__all__ = [
    "AmazonScraper",
    "EtsyScraper",
    "OttoScraper",
]
