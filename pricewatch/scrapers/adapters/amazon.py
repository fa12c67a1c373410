"""Amazon product page scraper.

Covers the .com, .de, .co.uk, .fr, .it, .es, .nl and .ca storefronts.
Amazon has the strongest bot detection of all supported marketplaces;
challenge pages are recognised by URL (``/errors/validateCaptcha``) or by
the wording of the robot check.
"""

import re
from typing import Dict, Optional

from bs4 import BeautifulSoup

from pricewatch.scrapers.base import (
    BaseMarketplaceScraper,
    Marketplace,
    ScrapeTarget,
    SellerType,
)

# Storefront domain -> region code
AMAZON_REGIONS: Dict[str, str] = {
    "com": "us",
    "de": "de",
    "co.uk": "uk",
    "fr": "fr",
    "it": "it",
    "es": "es",
    "nl": "nl",
    "ca": "ca",
}

REGION_CURRENCIES: Dict[str, str] = {
    "us": "USD",
    "uk": "GBP",
    "ca": "CAD",
    "de": "EUR",
    "fr": "EUR",
    "it": "EUR",
    "es": "EUR",
    "nl": "EUR",
}

_DOMAIN = r"amazon\.(com|de|co\.uk|fr|it|es|nl|ca)"

TITLE_SELECTORS = ["#productTitle", "#title", "h1.a-size-large"]
PRICE_SELECTORS = [
    ".a-price .a-offscreen",
    "#priceblock_ourprice",
    "#priceblock_dealprice",
    "#priceblock_saleprice",
    "#corePrice_feature_div .a-offscreen",
    "#apex_offerDisplay_desktop .a-offscreen",
    ".priceToPay .a-offscreen",
]
IMAGE_SELECTORS = ["#landingImage", "#imgBlkFront", "#main-image", ".a-dynamic-image"]
AVAILABILITY_SELECTORS = ["#availability span", "#availability", "#outOfStock"]
BRAND_SELECTORS = ["#bylineInfo", ".po-brand .po-break-word"]
CATEGORY_SELECTORS = ["#wayfinding-breadcrumbs_container ul li:last-child a"]
DESCRIPTION_SELECTORS = ["#productDescription p", "#feature-bullets ul"]
RATING_SELECTORS = ["#acrPopover .a-icon-alt", ".a-icon-alt"]
REVIEW_COUNT_SELECTORS = ["#acrCustomerReviewText"]
SELLER_SELECTORS = ["#sellerProfileTriggerId", "#merchant-info a"]

_BRAND_PREFIX = re.compile(r"^(Visit the|Besuche den|Brand:|Marke:)\s*", re.IGNORECASE)
_BRAND_SUFFIX = re.compile(r"\s*(Store|-Store)$", re.IGNORECASE)


class AmazonScraper(BaseMarketplaceScraper):
    """Amazon product page scraper (ASIN based)."""

    marketplace = Marketplace.AMAZON
    url_patterns = (
        re.compile(_DOMAIN + r"/(?:[^/?#]+/)?dp/([A-Z0-9]{10})", re.IGNORECASE),
        re.compile(_DOMAIN + r"/gp/product/([A-Z0-9]{10})", re.IGNORECASE),
        re.compile(_DOMAIN + r"/gp/aw/d/([A-Z0-9]{10})", re.IGNORECASE),
    )
    wait_selectors = ("#productTitle", "#title", ".a-price")
    block_url_fragments = ("captcha", "validatecaptcha")
    block_markers = (
        "enter the characters you see below",
        "type the characters you see",
        "sorry, we just need to make sure you're not a robot",
        "to discuss automated access to amazon data",
        "api-services-support@amazon.com",
        "geben sie die zeichen unten ein",
        "verify you are a human",
    )
    default_currency = "USD"

    out_of_stock_keywords = (
        "out of stock",
        "currently unavailable",
        "nicht verfügbar",
        "derzeit nicht auf lager",
        "no disponible",
        "indisponible",
        "non disponibile",
    )
    limited_keywords = ("only", "nur noch", "limited", "il ne reste plus", "solo")
    in_stock_keywords = ("in stock", "auf lager", "en stock", "disponibile", "op voorraad")

    def parse_url(self, url: str) -> ScrapeTarget:
        match = self._match(url)
        domain, asin = match.group(1).lower(), match.group(2).upper()
        region = AMAZON_REGIONS.get(domain, "us")
        return ScrapeTarget(
            marketplace=self.marketplace,
            marketplace_id=asin,
            region=region,
            url=f"https://www.amazon.{domain}/dp/{asin}",
        )

    def fallback_currency(self, target: ScrapeTarget) -> str:
        return REGION_CURRENCIES.get(target.region or "us", self.default_currency)

    def extract_fields(self, soup: BeautifulSoup, target: ScrapeTarget) -> Dict[str, Optional[str]]:
        seller_name = self.select_text(soup, SELLER_SELECTORS)
        if seller_name and "amazon" not in seller_name.lower():
            seller_type = SellerType.THIRD_PARTY_NEW.value
        else:
            seller_type = SellerType.MARKETPLACE.value

        return {
            "title": self.select_text(soup, TITLE_SELECTORS),
            "price_text": self._extract_price_text(soup),
            "image_url": self.select_attr(
                soup, IMAGE_SELECTORS, ("data-old-hires", "src", "data-src")
            ),
            "availability_text": self.select_text(soup, AVAILABILITY_SELECTORS),
            "brand": self._extract_brand(soup),
            "category": self.select_text(soup, CATEGORY_SELECTORS),
            "description": self.select_text(soup, DESCRIPTION_SELECTORS),
            "rating_text": self.select_text(soup, RATING_SELECTORS),
            "review_count_text": self.select_text(soup, REVIEW_COUNT_SELECTORS),
            "seller_name": seller_name,
            "seller_type": seller_type,
        }

    def _extract_price_text(self, soup: BeautifulSoup) -> Optional[str]:
        price_text = self.select_text(soup, PRICE_SELECTORS)
        if price_text:
            return price_text

        # Split rendering: <span class="a-price-whole">19<span>,</span></span><span class="a-price-fraction">99</span>
        whole = soup.select_one(".a-price-whole")
        if whole is None:
            return None
        whole_digits = re.sub(r"\D", "", whole.get_text(strip=True))
        if not whole_digits:
            return None
        fraction = soup.select_one(".a-price-fraction")
        symbol = soup.select_one(".a-price-symbol")
        fraction_digits = re.sub(r"\D", "", fraction.get_text(strip=True)) if fraction else ""
        text = f"{whole_digits}.{fraction_digits}" if fraction_digits else whole_digits
        if symbol:
            text = f"{symbol.get_text(strip=True)}{text}"
        return text

    def _extract_brand(self, soup: BeautifulSoup) -> Optional[str]:
        brand = self.select_text(soup, BRAND_SELECTORS)
        if not brand:
            return None
        brand = _BRAND_PREFIX.sub("", brand)
        brand = _BRAND_SUFFIX.sub("", brand)
        return brand.strip() or None
