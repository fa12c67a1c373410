"""Etsy listing page scraper.

Etsy sellers are independent shops, so every listing is reported as a
third-party offer with the shop name as seller. A listing page without an
inventory label is a purchasable listing.
"""

import re
from typing import Dict, Optional

import httpx
from bs4 import BeautifulSoup

from pricewatch.core.exceptions import RelayError
from pricewatch.scrapers.base import (
    Availability,
    BaseMarketplaceScraper,
    Marketplace,
    ScrapeTarget,
    SellerType,
)

ETSY_API_BASE = "https://openapi.etsy.com/v3/application"

TITLE_SELECTORS = [
    "h1[data-buy-box-listing-title]",
    '[data-selector="listing-page-title"]',
    "h1",
]
PRICE_SELECTORS = [
    '[data-selector="price-only"] .wt-text-title-larger',
    ".wt-text-title-larger.lc-price",
    '[data-buy-box-region="price"] .wt-text-title-larger',
    ".wt-mr-xs-2.lc-price",
]
IMAGE_SELECTORS = [
    ".wt-max-width-full.wt-horizontal-center img",
    "[data-carousel-pagination] img",
    ".carousel-container img",
]
SELLER_SELECTORS = ["[data-shop-name-link]", 'a[href*="/shop/"]']
DESCRIPTION_SELECTORS = ["[data-product-details-description-text-content]"]
CATEGORY_SELECTORS = ['[data-ui="breadcrumbs"] li']
AVAILABILITY_SELECTORS = ['[data-selector="inventory-label"]', ".wt-badge--status-warning"]
REVIEW_COUNT_SELECTORS = ['[data-reviews-count]', "#reviews .wt-badge"]

_RATING_LABEL = re.compile(r"(\d+(?:[.,]\d+)?)\s*(out of|stars)", re.IGNORECASE)


class EtsyScraper(BaseMarketplaceScraper):
    """Etsy listing scraper, with an optional Open API v3 lookup."""

    marketplace = Marketplace.ETSY
    url_patterns = (
        re.compile(r"etsy\.com/listing/(\d+)", re.IGNORECASE),
        re.compile(r"etsy\.com/[a-z]{2}(?:-[a-z]{2})?/listing/(\d+)", re.IGNORECASE),
    )
    wait_selectors = (
        "[data-buy-box-listing-id]",
        '[data-selector="listing-page-title"]',
        "h1",
    )
    block_url_fragments = ("captcha",)
    block_markers = (
        "verify you are a human",
        "please confirm you are not a robot",
        "automated access",
        "captcha-delivery.com",
    )
    default_currency = "EUR"

    out_of_stock_keywords = ("sold out", "unavailable", "no longer available")
    limited_keywords = ("only", "low in stock", "few left", "almost gone")
    in_stock_keywords = ("in stock", "available")
    missing_availability = Availability.IN_STOCK

    def __init__(self, api_key: str = "", http_client: Optional[httpx.AsyncClient] = None, **kwargs):
        super().__init__(**kwargs)
        self._api_key = api_key
        self._http_client = http_client

    def parse_url(self, url: str) -> ScrapeTarget:
        listing_id = self._match(url).group(1)
        return ScrapeTarget(
            marketplace=self.marketplace,
            marketplace_id=listing_id,
            url=f"https://www.etsy.com/listing/{listing_id}",
        )

    def extract_fields(self, soup: BeautifulSoup, target: ScrapeTarget) -> Dict[str, Optional[str]]:
        return {
            "title": self.select_text(soup, TITLE_SELECTORS),
            "price_text": self.select_text(soup, PRICE_SELECTORS),
            "image_url": self.select_attr(soup, IMAGE_SELECTORS, ("src", "data-src", "data-src-zoom-image")),
            "availability_text": self.select_text(soup, AVAILABILITY_SELECTORS),
            "category": self.select_last_text(soup, CATEGORY_SELECTORS),
            "description": self.select_text(soup, DESCRIPTION_SELECTORS),
            "rating_text": self._extract_rating_text(soup),
            "review_count_text": self.select_text(soup, REVIEW_COUNT_SELECTORS),
            "seller_name": self.select_text(soup, SELLER_SELECTORS),
            "seller_type": SellerType.THIRD_PARTY_NEW.value,
        }

    @staticmethod
    def _extract_rating_text(soup: BeautifulSoup) -> Optional[str]:
        for elem in soup.select("[data-reviews-carousel] [aria-label], [aria-label*='star']"):
            match = _RATING_LABEL.search(elem.get("aria-label", ""))
            if match:
                return match.group(1)
        return None

    @property
    def api_enabled(self) -> bool:
        return bool(self._api_key)

    async def fetch_via_api(self, listing_id: str) -> dict:
        """Fetch a listing from the Etsy Open API v3.

        Operator lookup used by the ``etsy-listing`` CLI command; queued
        jobs always go through the listing page.

        Args:
            listing_id: Numeric listing ID

        Returns:
            Dict with title, price (string), currency and availability

        Raises:
            RelayError: If the API key is missing or the request fails
        """
        if not self._api_key:
            raise RelayError(self.marketplace.value, "ETSY_API_KEY is not configured")

        client = self._http_client or httpx.AsyncClient(timeout=15)
        try:
            resp = await client.get(
                f"{ETSY_API_BASE}/listings/{listing_id}",
                headers={"x-api-key": self._api_key},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise RelayError(self.marketplace.value, f"etsy api returned {e.response.status_code}", e.response.status_code) from e
        except httpx.HTTPError as e:
            raise RelayError(self.marketplace.value, f"etsy api request failed: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()

        price = data.get("price") or {}
        amount = price.get("amount")
        divisor = price.get("divisor") or 100
        state = data.get("state", "")
        return {
            "title": data.get("title"),
            "price": str(amount / divisor) if amount is not None else None,
            "currency": price.get("currency_code"),
            "availability": Availability.IN_STOCK.value if state == "active" else Availability.OUT_OF_STOCK.value,
        }
