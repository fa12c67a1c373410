"""Tests for scrape completion events."""

import json
from decimal import Decimal

from redis.exceptions import ConnectionError as RedisConnectionError

from pricewatch.scrapers.base import Availability, ScrapedProduct
from pricewatch.services.event_publisher import SCRAPE_COMPLETED_CHANNEL, ScrapeEventPublisher


def _product() -> ScrapedProduct:
    return ScrapedProduct(
        title="Dyson V15",
        price=Decimal("649.00"),
        currency="EUR",
        availability=Availability.IN_STOCK,
    )


class UnreachableRedis:
    async def publish(self, channel, message):
        raise RedisConnectionError("connection refused")


async def test_publish_reaches_subscribers(redis_client):
    pubsub = redis_client.pubsub()
    await pubsub.subscribe(SCRAPE_COMPLETED_CHANNEL)
    await pubsub.get_message(timeout=0.5)

    receivers = await ScrapeEventPublisher(redis_client).publish_completed("p-1", _product())

    message = None
    for _ in range(20):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.05)
        if message is not None:
            break
    await pubsub.aclose()

    assert receivers == 1
    assert message["channel"] == SCRAPE_COMPLETED_CHANNEL
    payload = json.loads(message["data"])
    assert payload["productId"] == "p-1"
    assert payload["price"] == "649.00"
    assert payload["title"] == "Dyson V15"


async def test_redis_failure_is_swallowed():
    publisher = ScrapeEventPublisher(UnreachableRedis())

    assert await publisher.publish_completed("p-1", _product()) == 0
