"""Marketplace scraper contract.

Every marketplace implementation inherits from ``BaseMarketplaceScraper``
and supplies URL patterns, content-wait selectors, block indicators and a
selector cascade per field. One fetch attempt always runs the same steps:

    navigate -> wait for content -> check for block -> extract -> validate

Extraction always works on HTML (``page.content()`` for the browser path,
the raw response body for the relay path), so both fetch strategies share
the same block detection and field cascades.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, Optional, Pattern, Sequence, Tuple

import structlog
from bs4 import BeautifulSoup
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pricewatch.core.exceptions import (
    BlockedError,
    ExtractionIncompleteError,
    PermanentParseError,
    TransientNetworkError,
)
from pricewatch.scrapers.utils.normalizer import (
    PriceNormalizer,
    clean_text,
    normalize_url,
    parse_count,
    parse_rating,
    truncate,
)


class Marketplace(str, Enum):
    AMAZON = "amazon"
    ETSY = "etsy"
    OTTO = "otto"


class Availability(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    LIMITED = "limited"
    UNKNOWN = "unknown"


class SellerType(str, Enum):
    MARKETPLACE = "marketplace"
    THIRD_PARTY_NEW = "third_party_new"
    THIRD_PARTY_USED = "third_party_used"


@dataclass(frozen=True)
class ScrapeTarget:
    """A product page location derived from a URL. Immutable once parsed."""

    marketplace: Marketplace
    marketplace_id: str
    url: str
    region: Optional[str] = None


@dataclass
class ScrapedProduct:
    """Normalized extraction result returned by all marketplace scrapers.

    Only ``title`` and ``price`` are required; every other field may be
    missing when the page does not expose it.
    """

    title: str
    price: Decimal
    currency: str
    availability: Availability = Availability.UNKNOWN
    url: Optional[str] = None
    marketplace_id: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    seller_type: SellerType = SellerType.MARKETPLACE
    seller_name: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    scraped_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        """Validate data after initialization."""
        if not self.title:
            raise ValueError("title is required")
        if self.price is None or self.price < 0:
            raise ValueError("price must be a non-negative Decimal")
        self.description = truncate(self.description)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "price": str(self.price),
            "currency": self.currency,
            "availability": self.availability.value,
            "url": self.url,
            "marketplace_id": self.marketplace_id,
            "description": self.description,
            "image_url": self.image_url,
            "brand": self.brand,
            "category": self.category,
            "seller_type": self.seller_type.value,
            "seller_name": self.seller_name,
            "rating": self.rating,
            "review_count": self.review_count,
            "scraped_at": self.scraped_at.isoformat(),
        }


# Optional pacing hook run between content-wait and extraction
PacingHook = Callable[[Page], Awaitable[None]]


class BaseMarketplaceScraper(ABC):
    """Abstract base class for all marketplace scrapers."""

    marketplace: Marketplace
    url_patterns: Sequence[Pattern] = ()
    wait_selectors: Sequence[str] = ()
    # Lower-cased substrings of the current URL that mean a challenge page
    block_url_fragments: Sequence[str] = ()
    # Lower-cased phrases of challenge pages; keep them specific, a bare
    # "robot" also matches <meta name="robots"> on every normal page
    block_markers: Sequence[str] = ()
    default_currency: str = "EUR"

    # Keyword tables, checked in this order: out_of_stock, limited, in_stock
    out_of_stock_keywords: Sequence[str] = ()
    limited_keywords: Sequence[str] = ()
    in_stock_keywords: Sequence[str] = ()
    # Used when the page shows no availability text at all
    missing_availability: Availability = Availability.UNKNOWN

    def __init__(self, wait_timeout_ms: int = 10000, navigation_timeout_ms: int = 30000):
        self.wait_timeout_ms = wait_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self.logger = structlog.get_logger(__name__).bind(marketplace=self.marketplace.value)

    # ------------------------------------------------------------------
    # URL handling
    # ------------------------------------------------------------------

    def recognize(self, url: str) -> bool:
        """Return True if ``url`` is a product page of this marketplace."""
        return any(pattern.search(url or "") for pattern in self.url_patterns)

    @abstractmethod
    def parse_url(self, url: str) -> ScrapeTarget:
        """Derive a ScrapeTarget from a product URL.

        Raises:
            PermanentParseError: If the URL is not a product page of this marketplace
        """

    def _match(self, url: str) -> "re.Match":
        for pattern in self.url_patterns:
            match = pattern.search(url or "")
            if match:
                return match
        raise PermanentParseError(url, self.marketplace.value)

    def fallback_currency(self, target: ScrapeTarget) -> str:
        return self.default_currency

    # ------------------------------------------------------------------
    # Attempt state machine
    # ------------------------------------------------------------------

    async def scrape(
        self,
        page: Page,
        target: ScrapeTarget,
        pacing: Optional[PacingHook] = None,
    ) -> ScrapedProduct:
        """Run one fetch attempt for ``target`` on a checked-out page.

        Args:
            page: Page lent by the browser pool
            target: Parsed product location
            pacing: Optional human-pacing hook run before extraction

        Returns:
            ScrapedProduct with at least title and price

        Raises:
            BlockedError: The page is a CAPTCHA or automation challenge
            ExtractionIncompleteError: Title or price could not be extracted
            TransientNetworkError: Navigation failed or timed out
        """
        await self.navigate(page, target.url)
        await self.wait_for_content(page)
        if pacing is not None:
            await pacing(page)
        html = await page.content()
        return self.parse_html(html, target, current_url=page.url)

    async def navigate(self, page: Page, url: str) -> None:
        try:
            response = await page.goto(
                url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms
            )
        except PlaywrightTimeoutError as e:
            raise TransientNetworkError(self.marketplace.value, f"navigation timeout: {url}") from e

        if response is not None and response.status == 429:
            raise BlockedError(self.marketplace.value, "http_429")

    async def wait_for_content(self, page: Page) -> bool:
        """Race the product-page selectors; a timeout is not a failure.

        Returns:
            True if any selector appeared before the timeout
        """
        if not self.wait_selectors:
            return True
        try:
            await page.wait_for_selector(", ".join(self.wait_selectors), timeout=self.wait_timeout_ms)
            return True
        except PlaywrightTimeoutError:
            self.logger.debug("content_wait_timeout", url=page.url)
            return False

    def detect_block(self, url: Optional[str], html: str) -> Optional[str]:
        """Return the matched block indicator, or None for a normal page."""
        url_lower = (url or "").lower()
        for fragment in self.block_url_fragments:
            if fragment in url_lower:
                return f"url:{fragment}"

        html_lower = html.lower()
        for marker in self.block_markers:
            if marker in html_lower:
                return marker
        return None

    def parse_html(self, html: str, target: ScrapeTarget, current_url: Optional[str] = None) -> ScrapedProduct:
        """Block-check, extract and validate a product page.

        Shared by the browser path and the relay path.
        """
        indicator = self.detect_block(current_url or target.url, html)
        if indicator:
            self.logger.warning("block_detected", indicator=indicator, url=current_url or target.url)
            raise BlockedError(self.marketplace.value, indicator)

        soup = BeautifulSoup(html, "html.parser")
        fields = self.extract_fields(soup, target)
        return self.build_product(fields, target)

    @abstractmethod
    def extract_fields(self, soup: BeautifulSoup, target: ScrapeTarget) -> Dict[str, Optional[str]]:
        """Run the selector cascades and return raw text per field.

        Keys: title, price_text, currency, image_url, availability_text,
        brand, category, description, rating_text, review_count_text,
        seller_name, seller_type.
        """

    def build_product(self, fields: Dict[str, Optional[str]], target: ScrapeTarget) -> ScrapedProduct:
        """Normalize raw fields and enforce the required title and price.

        Raises:
            ExtractionIncompleteError: If title or price is missing
        """
        title = clean_text(fields.get("title"))
        price_text = clean_text(fields.get("price_text"))
        price = PriceNormalizer.clean_price_string(price_text)

        missing = []
        if not title:
            missing.append("title")
        if price is None:
            missing.append("price")
        if missing:
            raise ExtractionIncompleteError(self.marketplace.value, missing)

        currency = fields.get("currency") or PriceNormalizer.detect_currency(
            price_text, self.fallback_currency(target)
        )
        seller_type = fields.get("seller_type")

        return ScrapedProduct(
            title=title,
            price=price,
            currency=currency,
            availability=self.classify_availability(fields.get("availability_text")),
            url=normalize_url(target.url),
            marketplace_id=target.marketplace_id,
            description=clean_text(fields.get("description")),
            image_url=fields.get("image_url") or None,
            brand=clean_text(fields.get("brand")),
            category=clean_text(fields.get("category")),
            seller_type=SellerType(seller_type) if seller_type else SellerType.MARKETPLACE,
            seller_name=clean_text(fields.get("seller_name")),
            rating=parse_rating(fields.get("rating_text")),
            review_count=parse_count(fields.get("review_count_text")),
        )

    def classify_availability(self, text: Optional[str]) -> Availability:
        """Map free availability text onto the fixed vocabulary."""
        cleaned = clean_text(text)
        if not cleaned:
            return self.missing_availability

        lower = cleaned.lower()
        for keywords, availability in (
            (self.out_of_stock_keywords, Availability.OUT_OF_STOCK),
            (self.limited_keywords, Availability.LIMITED),
            (self.in_stock_keywords, Availability.IN_STOCK),
        ):
            if any(keyword in lower for keyword in keywords):
                return availability
        return Availability.UNKNOWN

    # ------------------------------------------------------------------
    # Selector helpers
    # ------------------------------------------------------------------

    @staticmethod
    def select_text(soup: BeautifulSoup, selectors: Iterable[str]) -> Optional[str]:
        """Text of the first selector that yields non-empty content."""
        for selector in selectors:
            elem = soup.select_one(selector)
            if elem is None:
                continue
            text = clean_text(elem.get_text(" ", strip=True))
            if text:
                return text
        return None

    @staticmethod
    def select_last_text(soup: BeautifulSoup, selectors: Iterable[str]) -> Optional[str]:
        """Text of the last match of the first selector that matches anything."""
        for selector in selectors:
            elems = soup.select(selector)
            for elem in reversed(elems):
                text = clean_text(elem.get_text(" ", strip=True))
                if text:
                    return text
        return None

    @staticmethod
    def select_attr(
        soup: BeautifulSoup,
        selectors: Iterable[str],
        attrs: Tuple[str, ...] = ("src", "data-src"),
    ) -> Optional[str]:
        """First non-empty attribute value across a selector cascade."""
        for selector in selectors:
            elem = soup.select_one(selector)
            if elem is None:
                continue
            for attr in attrs:
                value = elem.get(attr)
                if value and value.strip():
                    return value.strip()
        return None


def marketplace_from_value(value) -> Marketplace:
    """Coerce a string or Marketplace to a Marketplace.

    Raises:
        PermanentParseError: If the value names no supported marketplace
    """
    if isinstance(value, Marketplace):
        return value
    try:
        return Marketplace(str(value).lower())
    except ValueError:
        raise PermanentParseError(str(value), str(value))
