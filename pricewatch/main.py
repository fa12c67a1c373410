"""PriceWatch command-line entry point.

Usage:
  # Worker only (jobs come from another producer)
  python -m pricewatch worker

  # Worker plus the due-product scheduler
  python -m pricewatch run

  # One-off scrape, printed as JSON
  python -m pricewatch scrape https://www.amazon.de/dp/B0CHX1W1XY

  # Etsy listing through the Open API (needs ETSY_API_KEY)
  python -m pricewatch etsy-listing 1234567890

  # Queue and proxy statistics
  python -m pricewatch stats
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Optional

import httpx
import structlog

from pricewatch.config import Settings, settings
from pricewatch.core.exceptions import ScraperError
from pricewatch.core.logging import configure_logging
from pricewatch.jobs.job_queue import JobQueue
from pricewatch.jobs.scheduler import ScrapeScheduler
from pricewatch.jobs.worker import ScrapeWorker
from pricewatch.scrapers.adapters.etsy import EtsyScraper
from pricewatch.scrapers.factory import build_default_registry
from pricewatch.scrapers.utils.browser_manager import BrowserPool, PlaywrightLauncher
from pricewatch.scrapers.utils.proxy_manager import ProxyRotator
from pricewatch.scrapers.utils.rate_limiter import MarketplaceRateLimiter
from pricewatch.scrapers.utils.relay import RelayClient
from pricewatch.services.event_publisher import ScrapeEventPublisher
from pricewatch.services.product_service import ProductService

logger = structlog.get_logger(__name__)


async def build_worker(
    config: Settings,
    queue: JobQueue,
    result_sink,
    headless: Optional[bool] = None,
    event_publisher: Optional[ScrapeEventPublisher] = None,
) -> ScrapeWorker:
    """Construct a worker and everything it owns from settings."""
    proxy_rotator = ProxyRotator.from_settings(config)
    await proxy_rotator.initialize()

    launcher = PlaywrightLauncher(
        headless=config.BROWSER_HEADLESS if headless is None else headless
    )
    browser_pool = BrowserPool.from_settings(config, proxy_rotator, launcher=launcher)
    relay = RelayClient.from_settings(config) if config.SCRAPER_API_ENABLED else None

    return ScrapeWorker(
        queue=queue,
        registry=build_default_registry(config),
        browser_pool=browser_pool,
        proxy_rotator=proxy_rotator,
        result_sink=result_sink,
        rate_limiter=MarketplaceRateLimiter(config.get_rate_limits()),
        relay=relay,
        event_publisher=event_publisher,
        concurrency=config.SCRAPE_CONCURRENCY,
        timeout_ms=config.SCRAPE_TIMEOUT_MS,
        human_delay_ms=(config.HUMAN_DELAY_MIN_MS, config.HUMAN_DELAY_MAX_MS),
        proxy_refresh_interval=config.PROXY_REFRESH_MINUTES * 60,
    )


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_worker(config: Settings, with_scheduler: bool = False, headless: Optional[bool] = None) -> None:
    """Run the worker (and optionally the scheduler) until SIGINT/SIGTERM."""
    from pricewatch.db.session import async_session_factory, engine

    queue = JobQueue.from_settings(config)
    products = ProductService(async_session_factory)
    events = ScrapeEventPublisher.from_settings(config)
    worker = await build_worker(config, queue, products, headless=headless, event_publisher=events)

    scheduler = None
    if with_scheduler:
        scheduler = ScrapeScheduler(products, queue, interval_minutes=config.SCHEDULER_INTERVAL_MINUTES)

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    await worker.start()
    if scheduler is not None:
        scheduler.start()

    try:
        await stop_event.wait()
        logger.info("shutdown_requested")
    finally:
        if scheduler is not None:
            scheduler.stop()
        await worker.stop()
        await queue.close()
        await events.close()
        await engine.dispose()
        logger.info("shutdown_complete")


async def scrape_once(config: Settings, url: str, headless: Optional[bool] = None) -> int:
    """Scrape a single URL without queue or database and print the result."""
    worker = await build_worker(config, queue=None, result_sink=None, headless=headless)
    try:
        product = await worker.scrape_url(url)
    except ScraperError as e:
        print(json.dumps({"error": e.kind, "message": e.detail}, ensure_ascii=False))
        return 1
    finally:
        await worker.stop()

    print(json.dumps(product.to_dict(), ensure_ascii=False, indent=2))
    return 0


async def lookup_etsy_listing(
    config: Settings, listing_id: str, http_client: Optional[httpx.AsyncClient] = None
) -> int:
    """Look a listing up through the Etsy Open API and print the summary."""
    scraper = EtsyScraper(api_key=config.ETSY_API_KEY, http_client=http_client)
    try:
        listing = await scraper.fetch_via_api(listing_id)
    except ScraperError as e:
        print(json.dumps({"error": e.kind, "message": e.detail}, ensure_ascii=False))
        return 1

    print(json.dumps({"listing_id": listing_id, **listing}, ensure_ascii=False, indent=2))
    return 0


async def print_stats(config: Settings) -> None:
    queue = JobQueue.from_settings(config)
    try:
        stats = await queue.get_stats()
        failed = await queue.get_failed(limit=10)
    finally:
        await queue.close()

    print(json.dumps(
        {
            "queue": stats,
            "recent_failures": [
                {
                    "job_id": job.id,
                    "product_id": job.data.product_id,
                    "marketplace": job.data.marketplace.value,
                    "error_kind": job.error_kind,
                    "error": job.error_message,
                    "attempts": job.attempts_made,
                }
                for job in failed
            ],
        },
        indent=2,
        default=str,
    ))


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed Namespace object.
    """
    parser = argparse.ArgumentParser(
        prog="pricewatch",
        description="PriceWatch marketplace scraping engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--no-headless",
        action="store_true",
        help="Show the browser window (debugging).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Override LOG_LEVEL (default: {settings.LOG_LEVEL})",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("worker", help="Consume scrape jobs from the queue")
    sub.add_parser("run", help="Consume jobs and enqueue due products periodically")
    scrape = sub.add_parser("scrape", help="Scrape one product URL and print the result")
    scrape.add_argument("url", help="Amazon, Etsy or Otto product URL")
    etsy = sub.add_parser("etsy-listing", help="Look up an Etsy listing through the Open API")
    etsy.add_argument("listing_id", help="Numeric Etsy listing ID")
    sub.add_parser("stats", help="Print queue statistics and recent failures")

    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level or settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    headless = False if args.no_headless else None

    try:
        if args.command == "worker":
            asyncio.run(run_worker(settings, with_scheduler=False, headless=headless))
        elif args.command == "run":
            asyncio.run(run_worker(settings, with_scheduler=True, headless=headless))
        elif args.command == "scrape":
            sys.exit(asyncio.run(scrape_once(settings, args.url, headless=headless)))
        elif args.command == "etsy-listing":
            sys.exit(asyncio.run(lookup_etsy_listing(settings, args.listing_id)))
        elif args.command == "stats":
            asyncio.run(print_stats(settings))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
