"""Custom exception classes for the scraping engine.

Every failure raised while fetching a product page is a ``ScraperError``
subclass carrying a ``kind`` (reported to operators and stored on the
product row) and a ``retryable`` flag (consulted by the job queue).
"""

import asyncio
from typing import Iterable, Optional

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class PriceWatchException(Exception):
    """Base exception for all PriceWatch errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class ScraperError(PriceWatchException):
    """Raised when a scrape attempt fails."""

    kind: str = "scraper_error"
    retryable: bool = True

    def __init__(self, marketplace: str, message: str):
        self.marketplace = marketplace
        self.detail = message
        super().__init__(f"Scraper error for {marketplace}: {message}")


class TransientNetworkError(ScraperError):
    """Timeout, refused connection or dropped navigation."""

    kind = "transient"


class BlockedError(ScraperError):
    """Marketplace served a CAPTCHA or automation challenge instead of the page."""

    kind = "blocked"

    def __init__(self, marketplace: str, indicator: str):
        self.indicator = indicator
        super().__init__(marketplace, f"blocked ({indicator})")


class ExtractionIncompleteError(ScraperError):
    """Page loaded but a required field (title or price) could not be extracted."""

    kind = "extraction_incomplete"

    def __init__(self, marketplace: str, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(marketplace, f"missing required fields: {', '.join(self.missing)}")


class PermanentParseError(ScraperError):
    """URL does not match any known marketplace pattern."""

    kind = "permanent_parse"
    retryable = False

    def __init__(self, url: str, marketplace: str = "unknown"):
        self.url = url
        super().__init__(marketplace, f"unsupported product URL: {url}")


class BrowserLaunchError(TransientNetworkError):
    """Browser could not be launched after exhausting launch retries."""

    kind = "browser_launch"


class RelayError(TransientNetworkError):
    """Paid relay returned an error status or could not be reached."""

    kind = "relay"

    def __init__(self, marketplace: str, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(marketplace, message)


def classify_exception(exc: BaseException, marketplace: str = "unknown") -> ScraperError:
    """Map an arbitrary exception raised during an attempt onto the error taxonomy.

    Args:
        exc: Exception caught at the attempt boundary
        marketplace: Marketplace the attempt was running against

    Returns:
        A ScraperError instance (``exc`` itself if it already is one)
    """
    if isinstance(exc, ScraperError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, PlaywrightTimeoutError)):
        return TransientNetworkError(marketplace, f"timeout: {exc}")
    if isinstance(exc, (httpx.TransportError, PlaywrightError, ConnectionError, OSError)):
        return TransientNetworkError(marketplace, str(exc) or exc.__class__.__name__)
    # Selector evaluation crashes and other unexpected errors stay retryable
    return ScraperError(marketplace, f"{exc.__class__.__name__}: {exc}")
