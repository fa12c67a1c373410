"""Data normalization utilities for price, currency and text parsing."""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import structlog

logger = structlog.get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 1000

# First number-like token, allowing "." and "," as separators
_NUMBER_RE = re.compile(r"\d[\d.,]*\d|\d")
# Space or no-break space used as a thousands separator ("1 234,56")
_SPACE_THOUSANDS_RE = re.compile(r"(?<=\d)\s(?=\d{3}(?!\d))")
_WHITESPACE_RE = re.compile(r"\s+")


class PriceNormalizer:
    """Price and currency parsing across European and US number formats.

    Marketplaces render prices with either "," or "." as the decimal
    separator ("1.234,56 €" on amazon.de and otto.de, "$1,234.56" on
    amazon.com). Parsing never guesses from the marketplace: the separator
    layout of the string itself decides.
    """

    # Checked in order; "CA$" must win over "$"
    CURRENCY_MARKERS = (
        ("€", "EUR"),
        ("EUR", "EUR"),
        ("£", "GBP"),
        ("GBP", "GBP"),
        ("CA$", "CAD"),
        ("C$", "CAD"),
        ("CAD", "CAD"),
        ("US$", "USD"),
        ("USD", "USD"),
        ("$", "USD"),
    )

    @staticmethod
    def clean_price_string(raw: Optional[str]) -> Optional[Decimal]:
        """Parse a price string and extract its numeric value.

        Handles various formats:
        - "€19,99" -> 19.99
        - "1.234,56 €" -> 1234.56
        - "$1,234.56" -> 1234.56
        - "1 234,56" -> 1234.56
        - "1.234" -> 1234

        When both separators appear, the one occurring last is the decimal
        separator. With a single separator kind, it is decimal only if it
        occurs once and is followed by one or two digits.

        Args:
            raw: Raw price string

        Returns:
            Decimal price value, or None if no number could be parsed
        """
        if not raw:
            return None

        text = _SPACE_THOUSANDS_RE.sub("", raw)
        match = _NUMBER_RE.search(text)
        if not match:
            return None
        number = match.group(0)

        has_comma = "," in number
        has_dot = "." in number

        if has_comma and has_dot:
            decimal_sep = "," if number.rfind(",") > number.rfind(".") else "."
            thousands_sep = "." if decimal_sep == "," else ","
            number = number.replace(thousands_sep, "").replace(decimal_sep, ".")
        elif has_comma or has_dot:
            sep = "," if has_comma else "."
            head, _, tail = number.rpartition(sep)
            if number.count(sep) == 1 and 1 <= len(tail) <= 2:
                number = f"{head}.{tail}"
            else:
                number = number.replace(sep, "")

        try:
            return Decimal(number)
        except InvalidOperation:
            logger.debug("price_parse_failed", raw=raw)
            return None

    @classmethod
    def detect_currency(cls, text: Optional[str], fallback: str) -> str:
        """Infer an ISO currency code from symbols or codes in ``text``.

        Args:
            text: Price text as rendered on the page
            fallback: Marketplace-appropriate default currency

        Returns:
            Three-letter currency code
        """
        if not text:
            return fallback
        upper = text.upper()
        for marker, code in cls.CURRENCY_MARKERS:
            if marker in upper:
                return code
        return fallback


def clean_text(text: Optional[str]) -> Optional[str]:
    """Collapse runs of whitespace and strip; empty strings become None."""
    if text is None:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", text).strip()
    return cleaned or None


def truncate(text: Optional[str], limit: int = MAX_DESCRIPTION_LENGTH) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[:limit]


def parse_rating(text: Optional[str]) -> Optional[float]:
    """Parse a star rating such as "4.5 out of 5 stars" or "4,5 von 5 Sternen"."""
    if not text:
        return None
    match = re.search(r"(\d+(?:[.,]\d+)?)", text)
    if not match:
        return None
    value = float(match.group(1).replace(",", "."))
    if value < 0 or value > 5:
        return None
    return value


def parse_count(text: Optional[str]) -> Optional[int]:
    """Parse a review count such as "1,234 ratings" or "1.234 Bewertungen"."""
    if not text:
        return None
    match = _NUMBER_RE.search(_SPACE_THOUSANDS_RE.sub("", text))
    if not match:
        return None
    digits = re.sub(r"\D", "", match.group(0))
    return int(digits) if digits else None


def normalize_url(url: str) -> str:
    """Normalize a URL by removing tracking parameters and fragments.

    Args:
        url: URL to normalize

    Returns:
        Normalized URL
    """
    if not url:
        return url

    tracking_params = {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_content",
        "utm_term",
        "ref",
        "ref_",
        "tag",
        "fbclid",
        "gclid",
        "mc_cid",
        "mc_eid",
    }

    parsed = urlparse(url.strip())
    query_params = parse_qs(parsed.query)
    filtered_params = {
        k: v for k, v in query_params.items() if k not in tracking_params
    }
    new_query = urlencode(filtered_params, doseq=True)

    return urlunparse(
        (
            parsed.scheme or "https",
            parsed.netloc.lower(),
            parsed.path,
            parsed.params,
            new_query,
            "",
        )
    )
