"""Tests for the Redis-backed priority job queue."""

import pytest

from pricewatch.core.exceptions import (
    BlockedError,
    ExtractionIncompleteError,
    PermanentParseError,
    TransientNetworkError,
)
from pricewatch.jobs.job_queue import (
    ALREADY_FINALIZED,
    RETRY_SCHEDULED,
    TERMINAL_FAILURE,
    JobQueue,
    queue_priority,
)
from pricewatch.schemas.job import JobState, ScrapeJobRequest
from pricewatch.scrapers.base import Marketplace


class Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _request(product_id: str = "p1", priority: int = 5) -> ScrapeJobRequest:
    return ScrapeJobRequest(
        product_id=product_id,
        url="https://www.amazon.de/dp/B0CHX1W1XY",
        marketplace=Marketplace.AMAZON,
        marketplace_id="B0CHX1W1XY",
        priority=priority,
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def queue(redis_client, clock):
    return JobQueue(redis_client, name="test-jobs", max_attempts=3, backoff_ms=2000, clock=clock)


@pytest.mark.parametrize("priority,expected", [(10, 0), (0, 10), (5, 5), (42, 0), (-3, 10)])
def test_queue_priority_inverts_and_clamps(priority, expected):
    assert queue_priority(priority) == expected


class TestOrdering:
    async def test_urgent_job_is_served_first(self, queue):
        await queue.add(_request("low", priority=1))
        await queue.add(_request("urgent", priority=10))

        first = await queue.dequeue()
        second = await queue.dequeue()

        assert first.data.product_id == "urgent"
        assert second.data.product_id == "low"

    async def test_fifo_within_priority(self, queue):
        for product_id in ("a", "b", "c"):
            await queue.add(_request(product_id))

        served = [(await queue.dequeue()).data.product_id for _ in range(3)]

        assert served == ["a", "b", "c"]
        assert await queue.dequeue() is None

    async def test_dequeue_marks_job_active(self, queue):
        await queue.add(_request())
        record = await queue.dequeue()

        assert record.state is JobState.ACTIVE
        assert record.processed_at is not None
        assert (await queue.get_stats())["active"] == 1

    async def test_duplicate_job_id_is_not_added_twice(self, queue):
        first = await queue.add(_request(), job_id="product-p1")
        second = await queue.add(_request(priority=9), job_id="product-p1")

        assert second.id == first.id
        assert second.data.priority == 5
        assert (await queue.get_stats())["waiting"] == 1

    async def test_add_bulk_dedupes_by_product(self, queue):
        records = await queue.add_bulk([_request("p1"), _request("p1"), _request("p2")], dedupe_by_product=True)

        assert [r.id for r in records] == ["product-p1", "product-p1", "product-p2"]
        assert (await queue.get_stats())["waiting"] == 2


class TestRetries:
    async def test_retryable_failure_is_delayed_with_backoff(self, queue, clock):
        await queue.add(_request())
        record = await queue.dequeue()

        outcome = await queue.fail(record, TransientNetworkError("amazon", "connection reset"))

        assert outcome == RETRY_SCHEDULED
        assert await queue.dequeue() is None
        assert (await queue.get_stats())["delayed"] == 1

        clock.advance(1.999)
        assert await queue.dequeue() is None

        clock.advance(0.002)
        retried = await queue.dequeue()
        assert retried.id == record.id
        assert retried.attempts_made == 1
        assert retried.attempt_number == 2
        assert retried.error_kind == "transient"

    async def test_backoff_doubles(self, queue):
        assert queue.backoff_delay_ms(1) == 2000
        assert queue.backoff_delay_ms(2) == 4000
        assert queue.backoff_delay_ms(3) == 8000

    async def test_second_retry_waits_longer(self, queue, clock):
        await queue.add(_request())
        record = await queue.dequeue()
        await queue.fail(record, BlockedError("amazon", "captcha"))
        clock.advance(2.0)
        record = await queue.dequeue()

        await queue.fail(record, BlockedError("amazon", "captcha"))

        clock.advance(3.9)
        assert await queue.dequeue() is None
        clock.advance(0.2)
        record = await queue.dequeue()
        assert record.attempts_made == 2

    async def test_terminal_failure_after_max_attempts(self, queue, clock):
        await queue.add(_request())
        outcomes = []
        for _ in range(3):
            clock.advance(60)
            record = await queue.dequeue()
            outcomes.append(await queue.fail(record, ExtractionIncompleteError("amazon", ["price"])))

        assert outcomes == [RETRY_SCHEDULED, RETRY_SCHEDULED, TERMINAL_FAILURE]
        clock.advance(60)
        assert await queue.dequeue() is None

        [failed] = await queue.get_failed()
        assert failed.id == record.id
        assert failed.state is JobState.FAILED
        assert failed.attempts_made == 3
        assert failed.error_kind == "extraction_incomplete"

        stats = await queue.get_stats()
        assert stats["failed_total"] == 1
        assert stats["active"] == 0
        assert stats["delayed"] == 0

    async def test_permanent_error_fails_without_consuming_attempt(self, queue):
        await queue.add(_request())
        record = await queue.dequeue()

        outcome = await queue.fail(record, PermanentParseError("https://example.com/x"))

        assert outcome == TERMINAL_FAILURE
        [failed] = await queue.get_failed()
        assert failed.attempts_made == 0
        assert failed.error_kind == "permanent_parse"

    async def test_retry_count_on_request_counts_as_attempts(self, queue):
        request = _request()
        request.retry_count = 2
        await queue.add(request)
        record = await queue.dequeue()

        assert await queue.fail(record, TransientNetworkError("amazon", "timeout")) == TERMINAL_FAILURE


class TestFinalization:
    async def test_finalized_at_most_once(self, queue):
        await queue.add(_request())
        record = await queue.dequeue()

        assert await queue.fail(record, PermanentParseError("x")) == TERMINAL_FAILURE
        assert await queue.fail(record, PermanentParseError("x")) == ALREADY_FINALIZED
        assert await queue.complete(record) is False
        assert (await queue.get_stats())["failed_total"] == 1

    async def test_complete_removes_job(self, queue):
        await queue.add(_request())
        record = await queue.dequeue()

        assert await queue.complete(record) is True
        assert await queue.complete(record) is False
        assert await queue.get_job(record.id) is None

        stats = await queue.get_stats()
        assert stats["completed_total"] == 1
        assert stats["active"] == 0

    async def test_completed_job_id_can_be_enqueued_again(self, queue):
        await queue.add(_request(), job_id="product-p1")
        await queue.complete(await queue.dequeue())

        await queue.add(_request(), job_id="product-p1")

        assert (await queue.get_stats())["waiting"] == 1

    async def test_failed_retention_is_capped(self, redis_client):
        queue = JobQueue(redis_client, name="capped", failed_retention=2)
        for product_id in ("a", "b", "c"):
            await queue.add(_request(product_id))
            record = await queue.dequeue()
            await queue.fail(record, PermanentParseError("x"))

        failed = await queue.get_failed()

        assert [job.data.product_id for job in failed] == ["c", "b"]
        assert (await queue.get_stats())["failed_total"] == 3


class TestLeaseRecovery:
    async def test_abandoned_job_is_retried_after_restart(self, redis_client, clock):
        queue = JobQueue(redis_client, name="lease-jobs", backoff_ms=1000, lease_ms=60000, clock=clock)
        await queue.add_bulk([_request("p1")], dedupe_by_product=True)
        await queue.dequeue()

        # The worker holding the job dies; a new process reschedules the product
        restarted = JobQueue(redis_client, name="lease-jobs", backoff_ms=1000, lease_ms=60000, clock=clock)
        await restarted.add_bulk([_request("p1")], dedupe_by_product=True)
        assert await restarted.dequeue() is None

        clock.advance(60.001)
        assert await restarted.dequeue() is None
        stats = await restarted.get_stats()
        assert stats["active"] == 0
        assert stats["delayed"] == 1

        clock.advance(1.0)
        record = await restarted.dequeue()
        assert record.id == "product-p1"
        assert record.attempts_made == 1
        assert record.error_kind == "transient"

    async def test_live_lease_is_left_alone(self, queue, clock):
        await queue.add(_request())
        record = await queue.dequeue()

        clock.advance(queue.lease_ms / 1000 - 1)

        assert await queue.recover_stalled() == 0
        assert await queue.complete(record) is True

    async def test_expired_lease_at_attempt_ceiling_fails_terminally(self, queue, clock):
        request = _request()
        request.retry_count = 2
        await queue.add(request)
        record = await queue.dequeue()

        clock.advance(queue.lease_ms / 1000 + 1)

        assert await queue.recover_stalled() == 1
        [failed] = await queue.get_failed()
        assert failed.id == record.id
        assert failed.attempts_made == 3
        # The late worker can no longer finalize it
        assert await queue.complete(record) is False
        assert (await queue.get_stats())["failed_total"] == 1
