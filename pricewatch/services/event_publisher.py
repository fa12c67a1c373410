"""Redis pub/sub notifications for finished scrapes.

Subscribers (the API backend, websocket fan-out) listen on
``scrape:completed`` for a JSON message per saved result::

    {"productId": "...", "price": "19.99", "title": "...", "timestamp": "..."}
"""

import json
from datetime import datetime, timezone
from typing import Optional

import structlog
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from pricewatch.scrapers.base import ScrapedProduct

logger = structlog.get_logger(__name__)

SCRAPE_COMPLETED_CHANNEL = "scrape:completed"


class ScrapeEventPublisher:
    """Publishes scrape completion events on a Redis channel."""

    def __init__(self, redis: Redis, channel: str = SCRAPE_COMPLETED_CHANNEL):
        self._redis = redis
        self.channel = channel
        self.logger = logger.bind(service="scrape_event_publisher")

    @classmethod
    def from_settings(cls, settings, redis: Optional[Redis] = None) -> "ScrapeEventPublisher":
        client = redis or from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
        )
        return cls(client)

    async def publish_completed(self, product_id: str, product: ScrapedProduct) -> int:
        """Announce a saved scrape result.

        A Redis failure is logged and swallowed; the result is already stored.

        Returns:
            Number of subscribers that received the message
        """
        message = json.dumps(
            {
                "productId": product_id,
                "price": str(product.price) if product.price is not None else None,
                "title": product.title,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        try:
            receivers = await self._redis.publish(self.channel, message)
        except RedisError as e:
            self.logger.warning("scrape_event_publish_failed", product_id=product_id, error=str(e))
            return 0

        self.logger.debug("scrape_event_published", product_id=product_id, receivers=receivers)
        return receivers

    async def close(self) -> None:
        await self._redis.aclose()
