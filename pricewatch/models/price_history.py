"""Price history tracking for products."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.product import Product


class PriceHistory(UUIDPrimaryKeyMixin, Base):
    """One observed price of a product, appended on every successful scrape."""

    __tablename__ = "price_history"

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, comment="Price at this point in time")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    availability: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    seller_type: Mapped[str] = mapped_column(String(20), nullable=False, default="marketplace")
    seller_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="When this price was observed"
    )

    __table_args__ = (
        Index("idx_price_history_product_time", "product_id", "time"),
    )

    product: Mapped["Product"] = relationship(back_populates="price_history")

    def __repr__(self) -> str:
        return f"<PriceHistory(id={self.id}, product_id={self.product_id}, price={self.price}, time={self.time})>"
