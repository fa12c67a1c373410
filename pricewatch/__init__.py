"""PriceWatch marketplace scraping engine."""

__version__ = "0.1.0"
