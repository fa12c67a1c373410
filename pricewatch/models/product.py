"""Tracked product rows read and written by the scraping engine."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.price_history import PriceHistory


class Product(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A marketplace product whose price is tracked.

    Rows are created by the web application; the engine only fills in
    scraped fields and scrape bookkeeping.
    """

    __tablename__ = "products"

    # Marketplace identity
    marketplace: Mapped[str] = mapped_column(String(20), nullable=False, comment="amazon, etsy or otto")
    marketplace_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="ASIN, Etsy listing ID or Otto article number"
    )
    marketplace_region: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)

    # Scraped info
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Pricing
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    availability: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    lowest_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    lowest_price_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    highest_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    highest_price_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Scrape bookkeeping
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scrape_frequency_hours: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=24,
        comment="Minimum hours between two scrapes"
    )
    scrape_priority: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Base job priority 1-10, higher is more urgent"
    )
    scrape_error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_scrape_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_products_marketplace_id", "marketplace", "marketplace_id"),
        Index("idx_products_scrape_due", "is_active", "last_scraped_at"),
    )

    price_history: Mapped[List["PriceHistory"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, marketplace={self.marketplace}, marketplace_id={self.marketplace_id})>"
