"""Product service: persists scrape results and selects products due for scraping.

This is the engine's result sink. It updates the scraped columns of a
product, appends a price history row and maintains scrape error
bookkeeping. Retention, alerting and aggregation live elsewhere.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.models.price_history import PriceHistory
from pricewatch.models.product import Product
from pricewatch.scrapers.base import ScrapedProduct

logger = structlog.get_logger(__name__)

# Products failing this often are left to an operator
MAX_SCRAPE_ERRORS = 10
DEFAULT_SCRAPE_PRIORITY = 5


def _as_uuid(product_id: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(product_id, uuid.UUID):
        return product_id
    try:
        return uuid.UUID(str(product_id))
    except ValueError:
        return None


class ProductService:
    """Writes scrape outcomes back to the product tables.

    Every public method opens its own session so it can be called from
    concurrent worker tasks.
    """

    def __init__(self, session_factory: async_sessionmaker):
        """Initialize product service.

        Args:
            session_factory: Factory producing AsyncSession instances
        """
        self._session_factory = session_factory
        self.logger = logger.bind(service="product_service")

    async def _get_product(self, db: AsyncSession, product_id) -> Optional[Product]:
        pid = _as_uuid(product_id)
        if pid is None:
            self.logger.warning("invalid_product_id", product_id=str(product_id))
            return None
        product = await db.get(Product, pid)
        if product is None:
            self.logger.warning("product_not_found", product_id=str(product_id))
        return product

    async def save_scraped_product(self, product_id, scraped: ScrapedProduct) -> Optional[Product]:
        """Store a successful extraction and append a price history row.

        Descriptive fields are only overwritten when the scrape produced a
        value; price, currency and availability always are.

        Args:
            product_id: Product primary key
            scraped: Extraction result

        Returns:
            Updated Product, or None if the product does not exist
        """
        async with self._session_factory() as db:
            product = await self._get_product(db, product_id)
            if product is None:
                return None

            now = scraped.scraped_at
            product.title = scraped.title or product.title
            product.description = scraped.description or product.description
            product.image_url = scraped.image_url or product.image_url
            product.brand = scraped.brand or product.brand
            product.category = scraped.category or product.category

            product.current_price = scraped.price
            product.currency = scraped.currency
            product.availability = scraped.availability.value

            if product.lowest_price is None or scraped.price < product.lowest_price:
                product.lowest_price = scraped.price
                product.lowest_price_at = now
            if product.highest_price is None or scraped.price > product.highest_price:
                product.highest_price = scraped.price
                product.highest_price_at = now

            product.last_scraped_at = now
            product.scrape_error_count = 0
            product.last_scrape_error = None

            db.add(
                PriceHistory(
                    product_id=product.id,
                    price=scraped.price,
                    currency=scraped.currency,
                    availability=scraped.availability.value,
                    seller_type=scraped.seller_type.value,
                    seller_name=scraped.seller_name,
                    time=now,
                )
            )
            await db.commit()

            self.logger.info(
                "scrape_result_saved",
                product_id=str(product.id),
                price=str(scraped.price),
                currency=scraped.currency,
                availability=scraped.availability.value,
            )
            return product

    async def record_scrape_error(self, product_id, kind: str, message: str) -> Optional[Product]:
        """Increment the product's error count and store the classified error.

        Args:
            product_id: Product primary key
            kind: Error kind (``blocked``, ``transient``, ...)
            message: Human readable detail

        Returns:
            Updated Product, or None if the product does not exist
        """
        async with self._session_factory() as db:
            product = await self._get_product(db, product_id)
            if product is None:
                return None

            product.scrape_error_count = (product.scrape_error_count or 0) + 1
            product.last_scrape_error = f"{kind}: {message}"[:1000]
            product.last_scraped_at = datetime.now(timezone.utc)
            await db.commit()

            self.logger.info(
                "scrape_error_recorded",
                product_id=str(product.id),
                kind=kind,
                error_count=product.scrape_error_count,
            )
            return product

    async def get_due_products(self, limit: int = 500, now: Optional[datetime] = None) -> List[Product]:
        """Active products never scraped or older than their scrape frequency.

        Products with ``MAX_SCRAPE_ERRORS`` or more consecutive errors are skipped.
        Never-scraped products come first, then the stalest.
        """
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as db:
            # One staleness cutoff per configured frequency keeps the filter in SQL
            frequencies = (
                await db.execute(select(Product.scrape_frequency_hours).distinct())
            ).scalars().all()
            overdue = [
                and_(
                    Product.scrape_frequency_hours == hours,
                    Product.last_scraped_at <= now - timedelta(hours=hours),
                )
                for hours in frequencies
            ]

            result = await db.execute(
                select(Product)
                .where(
                    and_(
                        Product.is_active.is_(True),
                        Product.scrape_error_count < MAX_SCRAPE_ERRORS,
                        or_(Product.last_scraped_at.is_(None), *overdue),
                    )
                )
                .order_by(Product.last_scraped_at.asc().nulls_first())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_product(self, product_id) -> Optional[Product]:
        async with self._session_factory() as db:
            return await self._get_product(db, product_id)


def job_priority(product: Product) -> int:
    """Job priority for a product: its base priority minus one per recent error, in 1..10."""
    base = product.scrape_priority or DEFAULT_SCRAPE_PRIORITY
    return max(1, min(10, base - (product.scrape_error_count or 0)))
