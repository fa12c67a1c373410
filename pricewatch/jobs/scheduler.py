"""APScheduler-based producer that enqueues scrape jobs for due products.

On every tick it selects products that were never scraped or whose data is
older than their scrape frequency, and submits one job per product. It does
not decide anything about retries; that is the queue's job.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pricewatch.core.exceptions import PermanentParseError
from pricewatch.jobs.job_queue import JobQueue
from pricewatch.schemas.job import MAX_PRIORITY, ScrapeJobRecord, ScrapeJobRequest
from pricewatch.scrapers.base import marketplace_from_value
from pricewatch.services.product_service import ProductService, job_priority

logger = structlog.get_logger(__name__)

SCHEDULE_JOB_ID = "schedule_due_products"


class ScrapeScheduler:
    """Periodically turns due products into queued scrape jobs."""

    def __init__(
        self,
        product_service: ProductService,
        queue: JobQueue,
        interval_minutes: int = 5,
        batch_limit: int = 500,
    ):
        """Initialize scrape scheduler.

        Args:
            product_service: Source of due products
            queue: Destination for jobs
            interval_minutes: Minutes between two scheduling runs
            batch_limit: Maximum products enqueued per run
        """
        self._products = product_service
        self._queue = queue
        self.interval_minutes = interval_minutes
        self.batch_limit = batch_limit
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="scrape_scheduler")

    def start(self) -> None:
        """Start the scheduler and run the first scheduling pass immediately."""
        if self.scheduler.running:
            self.logger.warning("scheduler_already_running")
            return

        self.scheduler.add_job(
            self._run_wrapper,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=SCHEDULE_JOB_ID,
            name="Enqueue due products",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self.scheduler.start()
        self.logger.info("scheduler_started", interval_minutes=self.interval_minutes)

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("scheduler_stopped")

    async def _run_wrapper(self) -> None:
        # A failed pass must not unschedule the job
        try:
            await self.schedule_due_products()
        except Exception as e:
            self.logger.error("schedule_pass_failed", error=str(e), exc_info=True)

    async def schedule_due_products(self) -> int:
        """Enqueue one job per due product.

        Returns:
            Number of jobs enqueued
        """
        products = await self._products.get_due_products(limit=self.batch_limit)
        requests = []
        for product in products:
            try:
                marketplace = marketplace_from_value(product.marketplace)
            except PermanentParseError:
                self.logger.warning("unknown_marketplace", product_id=str(product.id), marketplace=product.marketplace)
                continue
            requests.append(
                ScrapeJobRequest(
                    product_id=str(product.id),
                    url=product.url,
                    marketplace=marketplace,
                    marketplace_id=product.marketplace_id,
                    priority=job_priority(product),
                )
            )

        records = await self._queue.add_bulk(requests, dedupe_by_product=True)
        self.logger.info("due_products_scheduled", due=len(products), enqueued=len(records))
        return len(records)

    async def scrape_now(self, product_id: str) -> Optional[ScrapeJobRecord]:
        """Enqueue a product at the highest priority, e.g. right after a user adds it."""
        product = await self._products.get_product(product_id)
        if product is None:
            return None
        return await self._queue.add(
            ScrapeJobRequest(
                product_id=str(product.id),
                url=product.url,
                marketplace=marketplace_from_value(product.marketplace),
                marketplace_id=product.marketplace_id,
                priority=MAX_PRIORITY,
            )
        )
