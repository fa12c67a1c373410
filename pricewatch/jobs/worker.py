"""Scrape worker: pulls jobs from the queue and drives one attempt per job.

A ``ScrapeWorker`` owns its browser pool, proxy rotator, rate limiter and
optional relay client; nothing here is a process-wide singleton. It runs a
small fixed number of asyncio tasks, each looping

    dequeue -> resolve scraper -> fetch (relay or pooled page) -> extract
            -> persist + complete | classify + fail/retry

Every per-job exception is caught at the attempt boundary; a failing job
never stops a worker task.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import structlog

from pricewatch.core.exceptions import (
    BlockedError,
    BrowserLaunchError,
    ExtractionIncompleteError,
    RelayError,
    ScraperError,
    TransientNetworkError,
    classify_exception,
)
from pricewatch.jobs.job_queue import TERMINAL_FAILURE, JobQueue
from pricewatch.schemas.job import ScrapeJobRecord
from pricewatch.scrapers.base import BaseMarketplaceScraper, ScrapedProduct, ScrapeTarget
from pricewatch.scrapers.factory import ScraperRegistry
from pricewatch.scrapers.utils.browser_manager import BrowserPool
from pricewatch.scrapers.utils.fingerprint import human_delay, human_scroll, random_mouse_movement
from pricewatch.scrapers.utils.proxy_manager import ProxyCandidate, ProxyRotator
from pricewatch.scrapers.utils.rate_limiter import MarketplaceRateLimiter
from pricewatch.scrapers.utils.relay import RelayClient
from pricewatch.services.event_publisher import ScrapeEventPublisher

logger = structlog.get_logger(__name__)

COMPLETED = "completed"


@dataclass
class AttemptContext:
    """What an attempt used, for proxy bookkeeping after it ends."""

    proxy: Optional[ProxyCandidate] = None
    generation: Optional[int] = None
    via_relay: bool = False


class ScrapeWorker:
    """Consumes scrape jobs with bounded concurrency and graceful shutdown."""

    def __init__(
        self,
        queue: JobQueue,
        registry: ScraperRegistry,
        browser_pool: BrowserPool,
        proxy_rotator: ProxyRotator,
        result_sink,
        rate_limiter: Optional[MarketplaceRateLimiter] = None,
        relay: Optional[RelayClient] = None,
        event_publisher: Optional[ScrapeEventPublisher] = None,
        concurrency: int = 2,
        timeout_ms: int = 45000,
        human_delay_ms: Tuple[int, int] = (500, 2000),
        poll_interval: float = 1.0,
        proxy_refresh_interval: float = 30 * 60,
        rotate_after_transient: int = 2,
        markup_suspect_threshold: int = 3,
    ):
        """Initialize worker.

        Args:
            queue: Job source
            registry: Scrapers keyed by marketplace
            browser_pool: Page lender; closed by ``stop()``
            proxy_rotator: Proxy health bookkeeping
            result_sink: Object with ``save_scraped_product`` and ``record_scrape_error``
            rate_limiter: Per-marketplace token buckets
            relay: Optional paid relay used for the marketplaces it is enabled for
            event_publisher: Optional ``scrape:completed`` notifier for saved results
            concurrency: Number of concurrent worker tasks
            timeout_ms: Upper bound for one attempt
            human_delay_ms: Pacing window between content wait and extraction
            poll_interval: Seconds to wait when the queue is empty
            proxy_refresh_interval: Seconds between harvested proxy refreshes
            rotate_after_transient: Consecutive transient failures before rotating the proxy
            markup_suspect_threshold: Consecutive incomplete extractions before warning
        """
        self._queue = queue
        self._registry = registry
        self._pool = browser_pool
        self._proxy_rotator = proxy_rotator
        self._sink = result_sink
        self._rate_limiter = rate_limiter or MarketplaceRateLimiter()
        self._relay = relay
        self._events = event_publisher
        self.concurrency = max(1, concurrency)
        self._timeout = timeout_ms / 1000
        self._human_delay_ms = human_delay_ms
        self._poll_interval = poll_interval
        self._proxy_refresh_interval = proxy_refresh_interval
        self._rotate_after_transient = rotate_after_transient
        self._markup_suspect_threshold = markup_suspect_threshold

        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._rotation_lock = asyncio.Lock()
        self._transient_streak: Dict[str, int] = defaultdict(int)
        self._incomplete_streak: Dict[str, int] = defaultdict(int)
        self.stats: Dict[str, int] = defaultdict(int)
        self.logger = logger.bind(service="scrape_worker")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Spawn the worker tasks. The browser is launched lazily on first use."""
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run_loop(index), name=f"scrape-worker-{index}")
            for index in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._proxy_refresh_loop(), name="proxy-refresh"))
        self.logger.info("worker_started", concurrency=self.concurrency, timeout_s=self._timeout)

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        """Stop taking jobs, let in-flight attempts finish, then close the browser.

        Args:
            drain_timeout: Seconds to wait for in-flight attempts; defaults to
                the attempt timeout plus a small margin
        """
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        if tasks:
            timeout = drain_timeout if drain_timeout is not None else self._timeout + 5
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                self.logger.warning("worker_tasks_cancelled", count=len(pending))

        await self._pool.close()
        if self._relay is not None:
            await self._relay.aclose()
        self.logger.info("worker_stopped", **dict(self.stats))

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early when the worker is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self, index: int) -> None:
        log = self.logger.bind(worker=index)
        while not self._stopping.is_set():
            try:
                record = await self._queue.dequeue()
            except Exception as e:
                log.error("dequeue_failed", error=str(e))
                await self._sleep(self._poll_interval * 5)
                continue

            if record is None:
                await self._sleep(self._poll_interval)
                continue

            try:
                await self.process_job(record)
            except Exception as e:
                # Queue or sink unreachable while finalizing; the lease expiry requeues the job
                log.error("job_processing_crashed", job_id=record.id, error=str(e), exc_info=True)

    async def _proxy_refresh_loop(self) -> None:
        while not self._stopping.is_set():
            await self._sleep(self._proxy_refresh_interval)
            if self._stopping.is_set():
                break
            try:
                await self._proxy_rotator.refresh()
            except Exception as e:
                self.logger.warning("proxy_refresh_failed", error=str(e))

    # ------------------------------------------------------------------
    # Job processing
    # ------------------------------------------------------------------

    async def process_job(self, record: ScrapeJobRecord) -> str:
        """Run one attempt for a dequeued job and finalize or requeue it.

        Returns:
            ``completed``, or the outcome of ``JobQueue.fail``
        """
        data = record.data
        marketplace = data.marketplace.value
        log = self.logger.bind(
            job_id=record.id,
            product_id=data.product_id,
            marketplace=marketplace,
            attempt=record.attempt_number,
        )
        ctx = AttemptContext()
        self.stats["processed"] += 1

        try:
            product = await asyncio.wait_for(self._attempt(record, ctx), timeout=self._timeout)
            await self._sink.save_scraped_product(data.product_id, product)
        except asyncio.TimeoutError:
            error: ScraperError = TransientNetworkError(
                marketplace, f"attempt exceeded {self._timeout:.0f}s"
            )
        except asyncio.CancelledError:
            await self._fail_cancelled(record, log)
            raise
        except Exception as e:
            error = classify_exception(e, marketplace)
        else:
            if ctx.proxy is not None:
                self._proxy_rotator.mark_success(ctx.proxy)
            self._transient_streak[marketplace] = 0
            self._incomplete_streak[marketplace] = 0
            await self._queue.complete(record)
            if self._events is not None:
                await self._events.publish_completed(data.product_id, product)
            self.stats["succeeded"] += 1
            log.info(
                "scrape_succeeded",
                price=str(product.price),
                currency=product.currency,
                availability=product.availability.value,
                via_relay=ctx.via_relay,
            )
            return COMPLETED

        return await self._handle_failure(record, error, ctx, log)

    async def _fail_cancelled(self, record: ScrapeJobRecord, log) -> None:
        """Hand an interrupted attempt back to the queue as a transient failure."""
        self.stats["cancelled"] += 1
        error = TransientNetworkError(record.data.marketplace.value, "attempt cancelled during shutdown")
        try:
            outcome = await self._queue.fail(record, error)
        except Exception as e:
            # Left to lease expiry
            log.error("cancelled_job_requeue_failed", error=str(e))
            return
        log.warning("scrape_attempt_cancelled", outcome=outcome)

    async def _attempt(self, record: ScrapeJobRecord, ctx: AttemptContext) -> ScrapedProduct:
        data = record.data
        scraper = self._registry.get(data.marketplace)
        target = scraper.parse_url(data.url)

        if self._relay is not None and self._relay.should_use_for(data.marketplace):
            await self._rate_limiter.acquire(data.marketplace.value)
            try:
                html = await self._relay.fetch(target)
                product = scraper.parse_html(html, target)
                ctx.via_relay = True
                return product
            except (RelayError, BlockedError) as e:
                self.logger.warning(
                    "relay_fallback_to_browser",
                    marketplace=data.marketplace.value,
                    error_kind=e.kind,
                    error=e.detail,
                )

        return await self._browser_attempt(scraper, target, ctx)

    async def _browser_attempt(
        self,
        scraper: BaseMarketplaceScraper,
        target: ScrapeTarget,
        ctx: AttemptContext,
    ) -> ScrapedProduct:
        await self._rate_limiter.acquire(target.marketplace.value)
        handle = await self._pool.get_page()
        ctx.proxy = self._pool.current_proxy
        ctx.generation = handle.generation
        try:
            return await scraper.scrape(handle.page, target, pacing=self._pace)
        finally:
            await self._pool.release_page(handle)

    async def _pace(self, page) -> None:
        # Best-effort stealth; these helpers never raise
        min_ms, max_ms = self._human_delay_ms
        await human_delay(min_ms, max_ms)
        await human_scroll(page)
        await random_mouse_movement(page)

    async def _handle_failure(self, record: ScrapeJobRecord, error: ScraperError, ctx: AttemptContext, log) -> str:
        marketplace = record.data.marketplace.value

        if isinstance(error, BlockedError):
            self.stats["blocked"] += 1
            if ctx.proxy is not None:
                self._proxy_rotator.mark_failed(ctx.proxy)
            await self._rotate_proxy(ctx, reason="blocked")
        elif isinstance(error, BrowserLaunchError):
            # Launch already cycled through proxies
            pass
        elif isinstance(error, TransientNetworkError):
            if ctx.proxy is not None:
                self._proxy_rotator.mark_failed(ctx.proxy)
            self._transient_streak[marketplace] += 1
            if self._transient_streak[marketplace] >= self._rotate_after_transient:
                self._transient_streak[marketplace] = 0
                await self._rotate_proxy(ctx, reason="repeated_transient_errors")
        elif isinstance(error, ExtractionIncompleteError):
            self._incomplete_streak[marketplace] += 1
            if self._incomplete_streak[marketplace] >= self._markup_suspect_threshold:
                log.warning(
                    "markup_change_suspected",
                    consecutive_failures=self._incomplete_streak[marketplace],
                    missing=error.missing,
                )

        log.warning("scrape_attempt_failed", error_kind=error.kind, error=error.detail, retryable=error.retryable)
        outcome = await self._queue.fail(record, error)

        if outcome == TERMINAL_FAILURE:
            self.stats["failed"] += 1
            try:
                await self._sink.record_scrape_error(record.data.product_id, error.kind, error.detail)
            except Exception as e:
                log.error("scrape_error_record_failed", error=str(e))
        else:
            self.stats["retried"] += 1
        return outcome

    async def _rotate_proxy(self, ctx: AttemptContext, reason: str) -> None:
        """Rotate once per browser generation, however many tasks saw the failure."""
        if ctx.generation is None:
            return
        async with self._rotation_lock:
            if self._pool.generation != ctx.generation:
                return
            try:
                await self._pool.rotate_proxy()
                self.stats["rotations"] += 1
                self.logger.info("proxy_rotation_triggered", reason=reason)
            except ScraperError as e:
                self.logger.error("proxy_rotation_failed", reason=reason, error=str(e))

    # ------------------------------------------------------------------
    # One-off scraping
    # ------------------------------------------------------------------

    async def scrape_url(self, url: str) -> ScrapedProduct:
        """Fetch a single product URL outside the queue.

        Raises:
            PermanentParseError: If the URL belongs to no supported marketplace
            ScraperError: If the attempt fails
        """
        target = self._registry.parse_url(url)
        scraper = self._registry.get(target.marketplace)
        ctx = AttemptContext()
        try:
            return await asyncio.wait_for(self._browser_attempt(scraper, target, ctx), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(target.marketplace.value, f"attempt exceeded {self._timeout:.0f}s") from e

    def get_stats(self) -> dict:
        return {
            "worker": dict(self.stats),
            "browser": self._pool.get_stats(),
            "proxies": self._proxy_rotator.get_stats(),
        }
