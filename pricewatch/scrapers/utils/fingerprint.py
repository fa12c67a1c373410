"""Browser fingerprint randomization and human-pacing helpers.

Every new browser context gets a ``Fingerprint``: a viewport, user agent,
Accept-Language header and locale drawn from realistic desktop values, plus
an init script that hides the usual automation tells (``navigator.webdriver``,
empty plugin list, missing ``window.chrome``, permission query quirks).

The pacing helpers (``human_delay``, ``human_scroll``, ``random_mouse_movement``)
and ``apply_fingerprint`` are NON-CRITICAL. They are best-effort stealth and
must never fail a scrape: every exception raised inside them is logged at
debug level and discarded. Callers must not depend on them having had any
effect.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


# Realistic desktop user-agent strings, Chrome-heavy like real traffic
USER_AGENTS: List[str] = [
    # Chrome on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36",
    # Chrome on macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    # Chrome on Linux
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    # Edge on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0",
    # Firefox
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:133.0) Gecko/20100101 Firefox/133.0",
    # Safari on macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.1 Safari/605.1.15",
]

VIEWPORTS: List[Tuple[int, int]] = [
    (1920, 1080),
    (1366, 768),
    (1536, 864),
    (1440, 900),
    (1280, 720),
    (2560, 1440),
]

# Accept-Language header -> (Playwright locale, navigator.languages)
ACCEPT_LANGUAGES: Dict[str, Tuple[str, List[str]]] = {
    "en-US,en;q=0.9": ("en-US", ["en-US", "en"]),
    "de-DE,de;q=0.9,en;q=0.8": ("de-DE", ["de-DE", "de", "en"]),
    "en-GB,en;q=0.9,en-US;q=0.8": ("en-GB", ["en-GB", "en", "en-US"]),
    "fr-FR,fr;q=0.9,en;q=0.8": ("fr-FR", ["fr-FR", "fr", "en"]),
}


@dataclass
class Fingerprint:
    """A randomized, internally consistent browser identity."""

    user_agent: str
    viewport: Dict[str, int]
    accept_language: str
    locale: str
    languages: List[str] = field(default_factory=list)

    @property
    def is_chromium(self) -> bool:
        return "Chrome/" in self.user_agent

    def extra_http_headers(self) -> Dict[str, str]:
        """Headers an ordinary browser of this kind would send."""
        headers = {
            "Accept-Language": self.accept_language,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
            "Upgrade-Insecure-Requests": "1",
        }
        if self.is_chromium:
            version = self.user_agent.split("Chrome/", 1)[1].split(".", 1)[0]
            platform = "macOS" if "Macintosh" in self.user_agent else (
                "Linux" if "Linux" in self.user_agent else "Windows"
            )
            headers.update(
                {
                    "Sec-Ch-Ua": f'"Chromium";v="{version}", "Not_A Brand";v="24"',
                    "Sec-Ch-Ua-Mobile": "?0",
                    "Sec-Ch-Ua-Platform": f'"{platform}"',
                }
            )
        return headers

    def context_options(self) -> dict:
        """Keyword arguments for ``Browser.new_context``."""
        return {
            "user_agent": self.user_agent,
            "viewport": dict(self.viewport),
            "locale": self.locale,
            "extra_http_headers": self.extra_http_headers(),
            "java_script_enabled": True,
        }

    def stealth_script(self) -> str:
        """Init script overriding introspectable automation signals."""
        return STEALTH_JS_TEMPLATE.replace("__LANGUAGES__", repr(self.languages))


class FingerprintRandomizer:
    """Produces a fresh ``Fingerprint`` per browser session."""

    def __init__(
        self,
        user_agents: Optional[List[str]] = None,
        viewports: Optional[List[Tuple[int, int]]] = None,
        accept_languages: Optional[Dict[str, Tuple[str, List[str]]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.user_agents = user_agents or USER_AGENTS
        self.viewports = viewports or VIEWPORTS
        self.accept_languages = accept_languages or ACCEPT_LANGUAGES
        self._rng = rng or random.Random()

    def generate(self) -> Fingerprint:
        width, height = self._rng.choice(self.viewports)
        accept_language = self._rng.choice(list(self.accept_languages))
        locale, languages = self.accept_languages[accept_language]
        return Fingerprint(
            user_agent=self._rng.choice(self.user_agents),
            viewport={"width": width, "height": height},
            accept_language=accept_language,
            locale=locale,
            languages=list(languages),
        )


async def apply_fingerprint(context, fingerprint: Fingerprint) -> None:
    """Install the stealth init script on a context. Non-critical."""
    try:
        await context.add_init_script(fingerprint.stealth_script())
    except Exception as e:
        logger.debug("stealth_script_failed", error=str(e))


async def human_delay(min_ms: int = 500, max_ms: int = 2000) -> None:
    """Sleep for a random interval inside ``[min_ms, max_ms]``. Non-critical."""
    try:
        low, high = sorted((max(0, min_ms), max(0, max_ms)))
        await asyncio.sleep(random.randint(low, high) / 1000)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug("human_delay_failed", error=str(e))


async def human_scroll(page) -> None:
    """Scroll the page down by a small random amount. Non-critical."""
    try:
        distance = random.randint(200, 700)
        await page.evaluate(f"window.scrollBy(0, {distance})")
        await asyncio.sleep(random.randint(100, 400) / 1000)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug("human_scroll_failed", error=str(e))


async def random_mouse_movement(page) -> None:
    """Move the pointer to a random point with interpolated steps. Non-critical."""
    try:
        viewport = page.viewport_size or {"width": 1280, "height": 720}
        x = random.randint(100, max(101, viewport["width"] - 100))
        y = random.randint(100, max(101, viewport["height"] - 100))
        await page.mouse.move(x, y, steps=10)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug("mouse_movement_failed", error=str(e))


STEALTH_JS_TEMPLATE = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => __LANGUAGES__ });
Object.defineProperty(navigator, 'plugins', {
  get: () => [
    { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
    { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
    { name: 'Native Client', filename: 'internal-nacl-plugin' },
  ],
});
Object.defineProperty(screen, 'colorDepth', { get: () => 24 });
window.chrome = window.chrome || { runtime: {} };
const originalQuery = window.navigator.permissions && window.navigator.permissions.query;
if (originalQuery) {
  window.navigator.permissions.query = (parameters) =>
    parameters.name === 'notifications'
      ? Promise.resolve({ state: 'prompt' })
      : originalQuery(parameters);
}
"""
