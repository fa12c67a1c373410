"""Otto.de product page scraper."""

import re
from typing import Dict, Optional

from bs4 import BeautifulSoup

from pricewatch.scrapers.base import (
    BaseMarketplaceScraper,
    Marketplace,
    ScrapeTarget,
    SellerType,
)

TITLE_SELECTORS = ['[data-qa="product-name"]', ".pdp_product-name", "h1.p_name", "h1"]
BRAND_SELECTORS = ['[data-qa="brand-name"]', ".pdp_brand-name", ".p_brand"]
PRICE_SELECTORS = [
    '[data-qa="product-price"]',
    ".pdp_price__main",
    ".p_price",
    '[data-qa="price"]',
]
IMAGE_SELECTORS = [
    '[data-qa="product-image"] img',
    ".pdp_gallery__main-image img",
    ".p_image img",
]
AVAILABILITY_SELECTORS = [
    '[data-qa="delivery-promise"]',
    ".pdp_delivery-promise",
    '[data-qa="availability"]',
]
CATEGORY_SELECTORS = ['[data-qa="breadcrumb"] a', ".p_breadcrumb a"]
DESCRIPTION_SELECTORS = [
    '[data-qa="product-description"]',
    ".pdp_description",
    ".p_description",
]
RATING_SELECTORS = ['[data-qa="rating"] .rating__value', ".p_rating__value"]
REVIEW_COUNT_SELECTORS = ['[data-qa="review-count"]', ".p_rating__count"]
SELLER_SELECTORS = ['[data-qa="seller-name"]', ".pdp_seller-name"]

# Trailing article number of a product slug
_ARTICLE_NUMBER = re.compile(r"-(\d{9,})/?$")


class OttoScraper(BaseMarketplaceScraper):
    """Otto product page scraper. German storefront only, prices in EUR."""

    marketplace = Marketplace.OTTO
    url_patterns = (
        re.compile(r"otto\.de/p/share/w/([A-Z0-9]+)", re.IGNORECASE),
        re.compile(r"otto\.de/(?:[a-z0-9-]+/)?p/([^/?#]+)", re.IGNORECASE),
    )
    wait_selectors = ('[data-qa="product-name"]', ".pdp_product-name", "h1")
    block_url_fragments = ("captcha",)
    # "roboter" alone would match robot vacuum cleaner listings
    block_markers = (
        "sicherheitsabfrage",
        "bist du ein mensch",
        "kein roboter",
        "not a robot",
        "automated access",
        "verify you are a human",
    )
    default_currency = "EUR"

    # "nicht lieferbar" contains "lieferbar"; out_of_stock is checked first
    out_of_stock_keywords = ("nicht lieferbar", "ausverkauft", "nicht verfügbar", "nicht mehr verfügbar")
    limited_keywords = ("wenige", "nur noch")
    in_stock_keywords = ("sofort", "lieferbar", "auf lager", "versandfertig")

    def parse_url(self, url: str) -> ScrapeTarget:
        match = self._match(url)
        slug = match.group(1).rstrip("/")
        if "/p/share/w/" in url.lower():
            marketplace_id = slug.upper()
            canonical = f"https://www.otto.de/p/share/w/{marketplace_id}"
        else:
            article = _ARTICLE_NUMBER.search(slug)
            marketplace_id = article.group(1) if article else slug
            canonical = f"https://www.otto.de/p/{slug}/"
        return ScrapeTarget(
            marketplace=self.marketplace,
            marketplace_id=marketplace_id,
            region="de",
            url=canonical,
        )

    def extract_fields(self, soup: BeautifulSoup, target: ScrapeTarget) -> Dict[str, Optional[str]]:
        seller_name = self.select_text(soup, SELLER_SELECTORS)
        sold_by_otto = soup.select_one('[data-qa="sold-by-otto"]') is not None or (
            seller_name is not None and "otto" in seller_name.lower()
        )
        if sold_by_otto or not seller_name:
            seller_type = SellerType.MARKETPLACE.value
        else:
            seller_type = SellerType.THIRD_PARTY_NEW.value

        return {
            "title": self.select_text(soup, TITLE_SELECTORS),
            "price_text": self.select_text(soup, PRICE_SELECTORS),
            "currency": "EUR",
            "image_url": self.select_attr(soup, IMAGE_SELECTORS),
            "availability_text": self.select_text(soup, AVAILABILITY_SELECTORS),
            "brand": self.select_text(soup, BRAND_SELECTORS),
            "category": self.select_last_text(soup, CATEGORY_SELECTORS),
            "description": self.select_text(soup, DESCRIPTION_SELECTORS),
            "rating_text": self.select_text(soup, RATING_SELECTORS),
            "review_count_text": self.select_text(soup, REVIEW_COUNT_SELECTORS),
            "seller_name": seller_name or ("OTTO" if sold_by_otto else None),
            "seller_type": seller_type,
        }
