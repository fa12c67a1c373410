"""ORM models for the columns the scraping engine reads and writes."""

from pricewatch.models.base import Base
from pricewatch.models.price_history import PriceHistory
from pricewatch.models.product import Product

__all__ = ["Base", "PriceHistory", "Product"]
