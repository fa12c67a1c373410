"""Tests for the Amazon, Etsy and Otto scrapers and the scraper registry."""

from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pricewatch.core.exceptions import (
    BlockedError,
    ExtractionIncompleteError,
    PermanentParseError,
    RelayError,
    TransientNetworkError,
)
from pricewatch.scrapers.adapters import AmazonScraper, EtsyScraper, OttoScraper
from pricewatch.scrapers.base import (
    Availability,
    Marketplace,
    ScrapedProduct,
    SellerType,
    marketplace_from_value,
)
from pricewatch.scrapers.factory import ScraperRegistry, build_default_registry

AMAZON_DE_PAGE = """
<html><head><meta name="robots" content="noindex"></head><body>
  <a id="bylineInfo">Besuche den Foo-Store</a>
  <span id="productTitle">  Foo  </span>
  <span class="a-price"><span class="a-offscreen">€19,99</span></span>
  <div id="availability"><span> In Stock </span></div>
  <img id="landingImage" data-old-hires="https://m.media-amazon.com/images/I/foo.jpg" src="small.jpg">
  <span id="acrPopover"><span class="a-icon-alt">4,5 von 5 Sternen</span></span>
  <span id="acrCustomerReviewText">1.234 Sternebewertungen</span>
  <a id="sellerProfileTriggerId">Foo GmbH</a>
</body></html>
"""

AMAZON_SPLIT_PRICE_PAGE = """
<html><body>
  <span id="productTitle">Bar</span>
  <span class="a-price">
    <span class="a-price-symbol">$</span>
    <span class="a-price-whole">1,299<span class="a-price-decimal">.</span></span>
    <span class="a-price-fraction">95</span>
  </span>
</body></html>
"""

AMAZON_CAPTCHA_PAGE = """
<html><body>
  <h4>Enter the characters you see below</h4>
  <p>Sorry, we just need to make sure you're not a robot.</p>
</body></html>
"""

ETSY_PAGE = """
<html><body>
  <h1 data-buy-box-listing-title>Handmade Mug</h1>
  <div data-selector="price-only"><p class="wt-text-title-larger">€24,50</p></div>
  <a data-shop-name-link>ClayCorner</a>
  <div data-ui="breadcrumbs"><li>Home</li><li>Mugs</li></div>
  <span aria-label="4.8 out of 5 stars"></span>
</body></html>
"""

OTTO_PAGE = """
<html><body>
  <span data-qa="brand-name">Dyson</span>
  <h1 data-qa="product-name">Dyson V15 Detect Roboter-Staubsauger</h1>
  <span data-qa="product-price">499,00 €</span>
  <div data-qa="delivery-promise">Sofort lieferbar</div>
  <div data-qa="sold-by-otto"></div>
</body></html>
"""


class TestMarketplaceEnum:
    def test_from_value(self):
        assert marketplace_from_value("Amazon") is Marketplace.AMAZON
        assert marketplace_from_value(Marketplace.OTTO) is Marketplace.OTTO

    def test_unknown_value(self):
        with pytest.raises(PermanentParseError):
            marketplace_from_value("ebay")


class TestScrapedProduct:
    def test_requires_title(self):
        with pytest.raises(ValueError):
            ScrapedProduct(title="", price=Decimal("1"), currency="EUR")

    def test_rejects_negative_price(self):
        with pytest.raises(ValueError):
            ScrapedProduct(title="x", price=Decimal("-1"), currency="EUR")

    def test_truncates_description(self):
        product = ScrapedProduct(title="x", price=Decimal("1"), currency="EUR", description="d" * 2000)
        assert len(product.description) == 1000


class TestAmazonScraper:
    scraper = AmazonScraper()

    @pytest.mark.parametrize(
        "url,asin,region,canonical",
        [
            (
                "https://www.amazon.de/Some-Product-Name/dp/B0CHX1W1XY/ref=sr_1_1?keywords=x",
                "B0CHX1W1XY",
                "de",
                "https://www.amazon.de/dp/B0CHX1W1XY",
            ),
            ("https://amazon.com/gp/product/b01n5iwh3k", "B01N5IWH3K", "us", "https://www.amazon.com/dp/B01N5IWH3K"),
            ("https://www.amazon.co.uk/gp/aw/d/B07XJ8C8F5", "B07XJ8C8F5", "uk", "https://www.amazon.co.uk/dp/B07XJ8C8F5"),
        ],
    )
    def test_parse_url(self, url, asin, region, canonical):
        assert self.scraper.recognize(url)
        target = self.scraper.parse_url(url)
        assert target.marketplace is Marketplace.AMAZON
        assert target.marketplace_id == asin
        assert target.region == region
        assert target.url == canonical

    def test_rejects_non_product_url(self):
        assert not self.scraper.recognize("https://www.amazon.de/s?k=headphones")
        with pytest.raises(PermanentParseError) as exc_info:
            self.scraper.parse_url("https://www.amazon.de/s?k=headphones")
        assert exc_info.value.retryable is False

    def test_extracts_product_page(self):
        target = self.scraper.parse_url("https://www.amazon.de/dp/B0CHX1W1XY")

        product = self.scraper.parse_html(AMAZON_DE_PAGE, target)

        assert product.title == "Foo"
        assert product.price == Decimal("19.99")
        assert product.currency == "EUR"
        assert product.availability is Availability.IN_STOCK
        assert product.brand == "Foo"
        assert product.image_url == "https://m.media-amazon.com/images/I/foo.jpg"
        assert product.rating == 4.5
        assert product.review_count == 1234
        assert product.seller_name == "Foo GmbH"
        assert product.seller_type is SellerType.THIRD_PARTY_NEW
        assert product.marketplace_id == "B0CHX1W1XY"

    def test_split_price_rendering(self):
        target = self.scraper.parse_url("https://www.amazon.com/dp/B01N5IWH3K")
        product = self.scraper.parse_html(AMAZON_SPLIT_PRICE_PAGE, target)
        assert product.price == Decimal("1299.95")
        assert product.currency == "USD"
        assert product.availability is Availability.UNKNOWN

    def test_currency_falls_back_to_region(self):
        target = self.scraper.parse_url("https://www.amazon.co.uk/dp/B07XJ8C8F5")
        html = '<span id="productTitle">Baz</span><span class="a-price"><span class="a-offscreen">12.49</span></span>'
        assert self.scraper.parse_html(html, target).currency == "GBP"

    def test_captcha_page_is_blocked(self):
        target = self.scraper.parse_url("https://www.amazon.de/dp/B0CHX1W1XY")
        with pytest.raises(BlockedError) as exc_info:
            self.scraper.parse_html(AMAZON_CAPTCHA_PAGE, target)
        assert exc_info.value.kind == "blocked"

    def test_captcha_url_is_blocked(self):
        target = self.scraper.parse_url("https://www.amazon.de/dp/B0CHX1W1XY")
        with pytest.raises(BlockedError):
            self.scraper.parse_html(
                AMAZON_DE_PAGE, target, current_url="https://www.amazon.de/errors/validateCaptcha"
            )

    def test_robots_meta_is_not_a_block(self):
        assert self.scraper.detect_block("https://www.amazon.de/dp/B0CHX1W1XY", AMAZON_DE_PAGE) is None

    def test_missing_price_is_incomplete(self):
        target = self.scraper.parse_url("https://www.amazon.de/dp/B0CHX1W1XY")
        with pytest.raises(ExtractionIncompleteError) as exc_info:
            self.scraper.parse_html('<span id="productTitle">Foo</span>', target)
        assert exc_info.value.missing == ["price"]
        assert exc_info.value.retryable is True

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("In Stock", Availability.IN_STOCK),
            ("Auf Lager.", Availability.IN_STOCK),
            ("Only 3 left in stock - order soon.", Availability.LIMITED),
            ("Nur noch 2 auf Lager", Availability.LIMITED),
            ("Currently unavailable.", Availability.OUT_OF_STOCK),
            ("Derzeit nicht auf Lager.", Availability.OUT_OF_STOCK),
            ("Usually dispatched within 3 weeks", Availability.UNKNOWN),
            (None, Availability.UNKNOWN),
        ],
    )
    def test_availability(self, text, expected):
        assert self.scraper.classify_availability(text) is expected


class TestEtsyScraper:
    scraper = EtsyScraper()

    @pytest.mark.parametrize(
        "url",
        [
            "https://www.etsy.com/listing/1234567890/handmade-ceramic-mug",
            "https://www.etsy.com/de/listing/1234567890/handgemachte-tasse",
            "https://etsy.com/de-en/listing/1234567890",
        ],
    )
    def test_parse_url(self, url):
        target = self.scraper.parse_url(url)
        assert target.marketplace_id == "1234567890"
        assert target.url == "https://www.etsy.com/listing/1234567890"

    def test_rejects_shop_url(self):
        assert not self.scraper.recognize("https://www.etsy.com/shop/ClayCorner")

    def test_extracts_listing(self):
        target = self.scraper.parse_url("https://www.etsy.com/listing/1234567890")

        product = self.scraper.parse_html(ETSY_PAGE, target)

        assert product.title == "Handmade Mug"
        assert product.price == Decimal("24.50")
        assert product.currency == "EUR"
        # No inventory label means the listing is purchasable
        assert product.availability is Availability.IN_STOCK
        assert product.seller_name == "ClayCorner"
        assert product.seller_type is SellerType.THIRD_PARTY_NEW
        assert product.category == "Mugs"
        assert product.rating == 4.8

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Sold out", Availability.OUT_OF_STOCK),
            ("Only 1 left", Availability.LIMITED),
            ("Unavailable", Availability.OUT_OF_STOCK),
        ],
    )
    def test_availability(self, text, expected):
        assert self.scraper.classify_availability(text) is expected

    async def test_api_lookup(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["x-api-key"] == "key"
            assert request.url.path.endswith("/listings/1234567890")
            return httpx.Response(
                200,
                json={
                    "title": "Handmade Mug",
                    "state": "active",
                    "price": {"amount": 2450, "divisor": 100, "currency_code": "EUR"},
                },
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        scraper = EtsyScraper(api_key="key", http_client=client)

        data = await scraper.fetch_via_api("1234567890")

        assert data == {
            "title": "Handmade Mug",
            "price": "24.5",
            "currency": "EUR",
            "availability": "in_stock",
        }

    async def test_api_error_is_relay_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(403)))
        scraper = EtsyScraper(api_key="key", http_client=client)
        with pytest.raises(RelayError) as exc_info:
            await scraper.fetch_via_api("1")
        assert exc_info.value.status_code == 403

    async def test_api_requires_key(self):
        with pytest.raises(RelayError):
            await EtsyScraper().fetch_via_api("1")


class TestOttoScraper:
    scraper = OttoScraper()

    def test_parse_product_url(self):
        url = "https://www.otto.de/p/dyson-v15-detect-akku-staubsauger-1593084620/#variationId=1593084621"
        target = self.scraper.parse_url(url)
        assert target.marketplace_id == "1593084620"
        assert target.region == "de"
        assert target.url == "https://www.otto.de/p/dyson-v15-detect-akku-staubsauger-1593084620/"

    def test_parse_share_url(self):
        target = self.scraper.parse_url("https://www.otto.de/p/share/w/s1abc23x")
        assert target.marketplace_id == "S1ABC23X"
        assert target.url == "https://www.otto.de/p/share/w/S1ABC23X"

    def test_extracts_product_page(self):
        target = self.scraper.parse_url("https://www.otto.de/p/dyson-v15-1593084620/")

        product = self.scraper.parse_html(OTTO_PAGE, target)

        assert product.title == "Dyson V15 Detect Roboter-Staubsauger"
        assert product.price == Decimal("499.00")
        assert product.currency == "EUR"
        assert product.availability is Availability.IN_STOCK
        assert product.brand == "Dyson"
        assert product.seller_type is SellerType.MARKETPLACE
        assert product.seller_name == "OTTO"

    def test_challenge_page_is_blocked(self):
        target = self.scraper.parse_url("https://www.otto.de/p/dyson-v15-1593084620/")
        html = "<html><body><h1>Sicherheitsabfrage</h1><p>Bist du ein Mensch?</p></body></html>"
        with pytest.raises(BlockedError):
            self.scraper.parse_html(html, target)

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("sofort lieferbar", Availability.IN_STOCK),
            ("Lieferbar in 2-3 Wochen", Availability.IN_STOCK),
            ("ausverkauft", Availability.OUT_OF_STOCK),
            ("Derzeit nicht lieferbar", Availability.OUT_OF_STOCK),
            ("Nur noch wenige verfügbar", Availability.LIMITED),
            ("Demnächst", Availability.UNKNOWN),
        ],
    )
    def test_availability(self, text, expected):
        assert self.scraper.classify_availability(text) is expected


class FakeNavigationPage:
    def __init__(self, html="", status=200, timeout=False):
        self.html = html
        self.status = status
        self.timeout = timeout
        self.url = "about:blank"

    async def goto(self, url, wait_until=None, timeout=None):
        if self.timeout:
            raise PlaywrightTimeoutError("Timeout 30000ms exceeded.")
        self.url = url
        return SimpleNamespace(status=self.status)

    async def wait_for_selector(self, selector, timeout=None):
        return None

    async def content(self):
        return self.html


class TestScrapeAttempt:
    async def test_scrape_runs_pacing_hook(self):
        scraper = AmazonScraper()
        target = scraper.parse_url("https://www.amazon.de/dp/B0CHX1W1XY")
        page = FakeNavigationPage(AMAZON_DE_PAGE)
        paced = []

        async def pacing(p):
            paced.append(p)

        product = await scraper.scrape(page, target, pacing=pacing)

        assert product.price == Decimal("19.99")
        assert paced == [page]

    async def test_navigation_timeout_is_transient(self):
        scraper = AmazonScraper()
        target = scraper.parse_url("https://www.amazon.de/dp/B0CHX1W1XY")
        with pytest.raises(TransientNetworkError):
            await scraper.scrape(FakeNavigationPage(timeout=True), target)

    async def test_http_429_is_blocked(self):
        scraper = OttoScraper()
        target = scraper.parse_url("https://www.otto.de/p/dyson-v15-1593084620/")
        with pytest.raises(BlockedError) as exc_info:
            await scraper.scrape(FakeNavigationPage(OTTO_PAGE, status=429), target)
        assert exc_info.value.indicator == "http_429"


class TestScraperRegistry:
    registry = build_default_registry()

    @pytest.mark.parametrize(
        "url,marketplace",
        [
            ("https://www.amazon.de/dp/B0CHX1W1XY", Marketplace.AMAZON),
            ("https://www.etsy.com/listing/1234567890", Marketplace.ETSY),
            ("https://www.otto.de/p/dyson-v15-1593084620/", Marketplace.OTTO),
        ],
    )
    def test_detect_marketplace(self, url, marketplace):
        assert self.registry.detect_marketplace(url) is marketplace
        assert self.registry.parse_url(url).marketplace is marketplace

    def test_dispatch_by_enum_or_value(self):
        assert isinstance(self.registry.get(Marketplace.ETSY), EtsyScraper)
        assert isinstance(self.registry.get("otto"), OttoScraper)

    def test_unknown_url(self):
        assert self.registry.detect_marketplace("https://www.ebay.de/itm/123") is None
        with pytest.raises(PermanentParseError):
            self.registry.parse_url("https://www.ebay.de/itm/123")

    def test_unregistered_marketplace(self):
        registry = ScraperRegistry()
        registry.register(AmazonScraper())
        with pytest.raises(PermanentParseError):
            registry.get(Marketplace.OTTO)
        assert registry.marketplaces() == [Marketplace.AMAZON]

    def test_register_rejects_non_scrapers(self):
        with pytest.raises(ValueError):
            ScraperRegistry().register(object())
