"""Playwright browser session pool with page reuse and proxy rotation.

One ``BrowserPool`` owns at most one live browser process at a time. The
process is launched against the proxy rotator's current candidate; since
that choice cannot change for the lifetime of the process, rotating the
proxy means tearing the whole process down and launching a new one.

Pages are lent out exclusively through ``get_page()`` and must be given
back with ``release_page()``. Every page lives in its own browser context so
it carries its own fingerprint and cookie jar.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_fixed

from pricewatch.core.exceptions import BrowserLaunchError
from pricewatch.scrapers.utils.fingerprint import FingerprintRandomizer, apply_fingerprint
from pricewatch.scrapers.utils.proxy_manager import ProxyCandidate, ProxyRotator

logger = structlog.get_logger(__name__)

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
]

# Requests to these hosts never reach the network
BLOCKED_URL_FRAGMENTS = (
    "google-analytics",
    "googletagmanager",
    "facebook",
    "doubleclick",
    "adsense",
    "amazon-adsystem",
    "scorecardresearch",
    "quantserve",
    "cloudfront.net/rum",
)

BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})


class PlaywrightLauncher:
    """Starts Playwright lazily and launches Chromium processes."""

    def __init__(self, headless: bool = True):
        self._headless = headless
        self._playwright: Optional[Playwright] = None

    async def launch(self, proxy: Optional[Dict[str, str]] = None) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self._headless,
            args=LAUNCH_ARGS,
            proxy=proxy,
        )

    async def stop(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


@dataclass(eq=False)
class PageHandle:
    """A pooled page together with its context and bookkeeping."""

    page: Page
    context: BrowserContext
    generation: int
    use_count: int = 0
    checked_out: bool = False


async def _filter_request(route, request) -> None:
    """Abort tracking requests and heavy resources, let everything else through."""
    url = request.url.lower()
    if request.resource_type in BLOCKED_RESOURCE_TYPES or any(
        fragment in url for fragment in BLOCKED_URL_FRAGMENTS
    ):
        await route.abort()
        return
    await route.continue_()


class BrowserPool:
    """Manages one browser process and a bounded pool of reusable pages.

    Invariants:
    - a ``PageHandle`` is either checked out to one caller or idle in the
      pool, never both;
    - a page whose use count has reached ``max_page_uses`` is destroyed
      instead of being pooled;
    - pages from a previous browser process (older ``generation``) are
      destroyed on release and never handed out again.
    """

    def __init__(
        self,
        proxy_rotator: ProxyRotator,
        fingerprints: Optional[FingerprintRandomizer] = None,
        launcher=None,
        max_pages: int = 5,
        max_page_uses: int = 30,
        launch_retries: int = 3,
        launch_retry_pause: float = 2.0,
        block_resources: bool = True,
    ):
        """Initialize the pool. Nothing is launched until first use.

        Args:
            proxy_rotator: Source of egress proxies
            fingerprints: Fingerprint generator applied to every new page
            launcher: Object with async ``launch(proxy)`` and ``stop()`` methods
            max_pages: Maximum number of idle pages kept in the pool
            max_page_uses: Uses after which a page is destroyed
            launch_retries: Launch attempts before giving up
            launch_retry_pause: Seconds between launch attempts
            block_resources: Abort tracking requests, images, media and fonts
        """
        self._proxy_rotator = proxy_rotator
        self._fingerprints = fingerprints or FingerprintRandomizer()
        self._launcher = launcher or PlaywrightLauncher()
        self.max_pages = max_pages
        self.max_page_uses = max_page_uses
        self._launch_retries = max(1, launch_retries)
        self._launch_retry_pause = launch_retry_pause
        self._block_resources = block_resources

        self._browser: Optional[Browser] = None
        self._current_proxy: Optional[ProxyCandidate] = None
        self._generation = 0
        self._idle: List[PageHandle] = []
        self._checked_out: List[PageHandle] = []
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_settings(cls, settings, proxy_rotator: ProxyRotator, **kwargs) -> "BrowserPool":
        return cls(
            proxy_rotator=proxy_rotator,
            launcher=kwargs.pop("launcher", None) or PlaywrightLauncher(headless=settings.BROWSER_HEADLESS),
            max_pages=settings.BROWSER_MAX_PAGES,
            max_page_uses=settings.BROWSER_MAX_PAGE_USES,
            launch_retries=settings.BROWSER_LAUNCH_RETRIES,
            launch_retry_pause=settings.BROWSER_LAUNCH_RETRY_PAUSE_MS / 1000,
            **kwargs,
        )

    @property
    def current_proxy(self) -> Optional[ProxyCandidate]:
        return self._current_proxy

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    async def initialize(self) -> None:
        """Launch the browser process if it is not running yet."""
        async with self._lock:
            self._closed = False
            if self._browser is None:
                await self._launch_locked()

    async def _launch_locked(self) -> None:
        """Launch with the rotator's next proxy, rotating on every failed attempt.

        Raises:
            BrowserLaunchError: If every attempt failed
        """
        self._current_proxy = self._proxy_rotator.get_next()

        def _rotate_before_retry(retry_state: RetryCallState) -> None:
            failed = self._current_proxy
            error = retry_state.outcome.exception() if retry_state.outcome else None
            if failed is not None:
                self._proxy_rotator.mark_failed(failed)
            candidate = self._proxy_rotator.get_next()
            # Same single proxy again: try without one
            if candidate is not None and failed is not None and candidate.key == failed.key:
                candidate = None
            self._current_proxy = candidate
            logger.warning(
                "browser_launch_retry",
                attempt=retry_state.attempt_number,
                failed_proxy=failed.key if failed else None,
                next_proxy=candidate.key if candidate else None,
                error=str(error),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._launch_retries),
            wait=wait_fixed(self._launch_retry_pause),
            before_sleep=_rotate_before_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    proxy_config = (
                        {"server": self._current_proxy.server} if self._current_proxy else None
                    )
                    self._browser = await self._launcher.launch(proxy_config)
        except Exception as e:
            self._browser = None
            logger.error("browser_launch_failed", attempts=self._launch_retries, error=str(e))
            raise BrowserLaunchError("browser", f"launch failed after {self._launch_retries} attempts: {e}") from e

        self._generation += 1
        logger.info(
            "browser_started",
            generation=self._generation,
            proxy=self._current_proxy.key if self._current_proxy else None,
        )

    async def get_page(self) -> PageHandle:
        """Check out a page, reusing an idle one when possible.

        Returns:
            A PageHandle owned exclusively by the caller until ``release_page``

        Raises:
            BrowserLaunchError: If the pool is closed or the browser cannot be launched
        """
        while True:
            async with self._lock:
                if self._closed:
                    raise BrowserLaunchError("browser", "browser pool is closed")
                if self._browser is None:
                    await self._launch_locked()
                browser = self._browser
                generation = self._generation
                handle = self._idle.pop() if self._idle else None
                if handle is not None:
                    handle.checked_out = True
                    self._checked_out.append(handle)

            if handle is None:
                break

            if handle.generation != generation or handle.use_count >= self.max_page_uses:
                await self._discard(handle)
                continue
            try:
                await handle.page.goto("about:blank")
            except Exception as e:
                logger.debug("pooled_page_reset_failed", error=str(e))
                await self._discard(handle)
                continue

            handle.use_count += 1
            return handle

        handle = await self._create_page(browser, generation)
        handle.use_count = 1
        handle.checked_out = True
        self._checked_out.append(handle)
        return handle

    async def _create_page(self, browser: Browser, generation: int) -> PageHandle:
        fingerprint = self._fingerprints.generate()
        options = fingerprint.context_options()
        proxy = self._current_proxy
        if proxy is not None and proxy.has_credentials:
            options["proxy"] = proxy.playwright_proxy()

        context = await browser.new_context(**options)
        await apply_fingerprint(context, fingerprint)
        if self._block_resources:
            await context.route("**/*", _filter_request)
        page = await context.new_page()
        logger.debug(
            "browser_page_created",
            generation=generation,
            viewport=fingerprint.viewport,
            locale=fingerprint.locale,
        )
        return PageHandle(page=page, context=context, generation=generation)

    async def release_page(self, handle: Optional[PageHandle]) -> None:
        """Return a page to the pool, or destroy it if it is worn out, stale or surplus."""
        if handle is None or not handle.checked_out:
            return

        reusable = (
            not self._closed
            and handle.generation == self._generation
            and handle.use_count < self.max_page_uses
        )
        if reusable:
            try:
                await handle.context.clear_cookies()
                await handle.page.evaluate(
                    "() => { try { localStorage.clear(); sessionStorage.clear(); } catch (e) {} }"
                )
            except Exception as e:
                logger.debug("page_cleanup_failed", error=str(e))
                reusable = False

        # Re-check after the awaits above: a rotation or close may have happened
        if (
            reusable
            and not self._closed
            and handle.generation == self._generation
            and len(self._idle) < self.max_pages
        ):
            self._remove_checked_out(handle)
            handle.checked_out = False
            self._idle.append(handle)
            return

        await self._discard(handle)

    async def rotate_proxy(self) -> None:
        """Tear down the browser process and relaunch it with the next proxy.

        All pages belonging to the old process become invalid.
        """
        async with self._lock:
            if self._closed:
                return
            old_proxy = self._current_proxy
            await self._teardown_locked()
            await self._launch_locked()
            logger.info(
                "proxy_rotated",
                old_proxy=old_proxy.key if old_proxy else None,
                new_proxy=self._current_proxy.key if self._current_proxy else None,
            )

    async def close(self) -> None:
        """Close all pages and the browser process. Safe to call repeatedly."""
        async with self._lock:
            if self._closed and self._browser is None:
                return
            self._closed = True
            await self._teardown_locked()
            # Pages still checked out belong to a dead process now
            for handle in self._checked_out:
                handle.checked_out = False
            self._checked_out.clear()
            await self._launcher.stop()
            logger.info("browser_pool_closed")

    async def _teardown_locked(self) -> None:
        idle, self._idle = self._idle, []
        for handle in idle:
            await self._close_handle(handle)

        if self._browser is not None:
            browser, self._browser = self._browser, None
            try:
                await browser.close()
            except Exception as e:
                logger.debug("browser_close_failed", error=str(e))
            logger.info("browser_stopped", generation=self._generation)
        # Outstanding pages of this process are stale from now on
        self._generation += 1

    async def _discard(self, handle: PageHandle) -> None:
        self._remove_checked_out(handle)
        handle.checked_out = False
        await self._close_handle(handle)

    def _remove_checked_out(self, handle: PageHandle) -> None:
        if handle in self._checked_out:
            self._checked_out.remove(handle)

    @staticmethod
    async def _close_handle(handle: PageHandle) -> None:
        try:
            await handle.context.close()
        except Exception as e:
            # Context of a browser that is already gone
            logger.debug("page_close_failed", error=str(e))

    def get_stats(self) -> dict:
        return {
            "running": self._browser is not None,
            "generation": self._generation,
            "idle_pages": len(self._idle),
            "checked_out_pages": len(self._checked_out),
            "proxy": self._current_proxy.key if self._current_proxy else None,
        }
