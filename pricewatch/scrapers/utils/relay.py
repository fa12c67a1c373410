"""Paid scraping relay (ScraperAPI-compatible) used as an alternate fetch path.

When the relay is enabled for a marketplace the worker fetches raw HTML
through it instead of driving a browser page. The HTML then goes through
the same block detection and selector cascades as the browser path.
"""

from typing import Iterable, Optional

import httpx
import structlog

from pricewatch.core.exceptions import RelayError
from pricewatch.scrapers.base import Marketplace, ScrapeTarget
from pricewatch.scrapers.utils.retry import http_retry

logger = structlog.get_logger(__name__)

SCRAPER_API_URL = "https://api.scraperapi.com/"
SCRAPER_API_ACCOUNT_URL = "https://api.scraperapi.com/account"


class RelayClient:
    """Thin async client for a ScraperAPI-style fetch relay."""

    def __init__(
        self,
        api_key: str = "",
        enabled: bool = False,
        marketplaces: Iterable[str] = ("amazon",),
        timeout: float = 70.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize relay client.

        Args:
            api_key: Relay API key
            enabled: Master switch; the relay is off without a key as well
            marketplaces: Marketplace names routed through the relay
            timeout: Request timeout in seconds (rendered fetches are slow)
            http_client: Shared client, mostly for tests
        """
        self._api_key = api_key
        self._enabled = enabled
        self._marketplaces = {m.lower() for m in marketplaces}
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self.logger = logger.bind(service="relay")

    @classmethod
    def from_settings(cls, settings, http_client: Optional[httpx.AsyncClient] = None) -> "RelayClient":
        return cls(
            api_key=settings.SCRAPER_API_KEY,
            enabled=settings.SCRAPER_API_ENABLED,
            marketplaces=settings.get_relay_marketplaces(),
            http_client=http_client,
        )

    def is_enabled(self) -> bool:
        return self._enabled and bool(self._api_key)

    def should_use_for(self, marketplace) -> bool:
        value = marketplace.value if isinstance(marketplace, Marketplace) else str(marketplace)
        return self.is_enabled() and value.lower() in self._marketplaces

    def build_params(
        self,
        url: str,
        render: bool = True,
        country_code: Optional[str] = None,
        premium: bool = False,
        session_number: Optional[int] = None,
    ) -> dict:
        params = {"api_key": self._api_key, "url": url}
        if render:
            params["render"] = "true"
        if country_code:
            params["country_code"] = country_code
        if premium:
            params["premium"] = "true"
        if session_number is not None:
            params["session_number"] = str(session_number)
        return params

    @staticmethod
    def country_for(target: ScrapeTarget) -> Optional[str]:
        """Relay country code for a target's region ("uk" becomes "gb")."""
        if not target.region:
            return None
        return "gb" if target.region == "uk" else target.region

    @http_retry
    async def _get(self, url: str, params: dict) -> httpx.Response:
        return await self._client.get(url, params=params)

    async def fetch(self, target: ScrapeTarget, render: bool = True, premium: bool = False) -> str:
        """Fetch the raw HTML of a product page through the relay.

        Args:
            target: Parsed product location
            render: Ask the relay to render JavaScript
            premium: Use residential egress

        Returns:
            Response body as text

        Raises:
            RelayError: On non-2xx status or transport failure
        """
        marketplace = target.marketplace.value
        if not self.is_enabled():
            raise RelayError(marketplace, "relay is not enabled")

        params = self.build_params(
            target.url, render=render, country_code=self.country_for(target), premium=premium
        )
        try:
            resp = await self._get(SCRAPER_API_URL, params)
        except httpx.HTTPError as e:
            raise RelayError(marketplace, f"relay request failed: {e}") from e

        if resp.status_code >= 400:
            self.logger.warning("relay_fetch_failed", marketplace=marketplace, status=resp.status_code)
            raise RelayError(marketplace, f"relay returned {resp.status_code}", resp.status_code)

        self.logger.debug("relay_fetch_ok", marketplace=marketplace, bytes=len(resp.content))
        return resp.text

    async def get_account_info(self) -> dict:
        """Remaining request credits and concurrency limits of the relay account."""
        if not self._api_key:
            raise RelayError("relay", "SCRAPER_API_KEY is not configured")
        try:
            resp = await self._get(SCRAPER_API_ACCOUNT_URL, {"api_key": self._api_key})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise RelayError("relay", f"account lookup failed: {e}") from e
        return resp.json()

    async def aclose(self) -> None:
        await self._client.aclose()
