"""Priority job queue backed by Redis sorted sets.

Key layout under ``<name>:``

    waiting        ZSET  job id -> internal priority * 1e12 + sequence
    delayed        ZSET  job id -> epoch milliseconds when the retry is due
    active         ZSET  job id -> epoch milliseconds when the worker lease expires
    job:<id>       STR   ScrapeJobRecord as JSON
    seq            INT   FIFO tie-breaker within one priority
    failed         LIST  terminally failed records, newest first, capped

Priority mapping: producers pass ``priority`` in 0..10 where 10 is the most
urgent. Internally the queue serves the LOWEST score first, so the internal
priority is ``10 - priority``. ``queue_priority()`` is the only place this
inversion happens.

A worker holds a dequeued job under a lease. If the worker dies or is
cancelled without finalizing, ``recover_stalled()`` (run on every
``dequeue``) treats the expired lease as a failed attempt.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

import structlog
from redis.asyncio import Redis, from_url

from pricewatch.core.exceptions import ScraperError, TransientNetworkError
from pricewatch.schemas.job import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    JobState,
    ScrapeJobRecord,
    ScrapeJobRequest,
)

logger = structlog.get_logger(__name__)

_SEQ_SPAN = 10**12

# Outcomes of JobQueue.fail()
RETRY_SCHEDULED = "retry_scheduled"
TERMINAL_FAILURE = "failed"
ALREADY_FINALIZED = "already_finalized"


def queue_priority(priority: int) -> int:
    """Map a producer priority (10 = urgent) to the internal one (0 = served first)."""
    clamped = max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))
    return MAX_PRIORITY - clamped


class JobQueue:
    """Persistent priority queue with bounded retries and exponential backoff.

    A job is finalized (completed or terminally failed) exactly once: the
    removal of its id from the ``active`` set is the atomic guard for both
    transitions, including recovery of an expired lease.
    """

    def __init__(
        self,
        redis: Redis,
        name: str = "scrape-jobs",
        max_attempts: int = 3,
        backoff_ms: int = 2000,
        failed_retention: int = 1000,
        lease_ms: int = 120000,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize job queue.

        Args:
            redis: Async Redis client created with ``decode_responses=True``
            name: Key prefix
            max_attempts: Attempts before a job fails terminally
            backoff_ms: Delay before the first retry; doubles per attempt
            failed_retention: Number of failed jobs kept for diagnostics
            lease_ms: How long a dequeued job may stay unfinalized before it
                counts as a failed attempt
            clock: Wall clock in seconds, injectable for tests
        """
        self._redis = redis
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.failed_retention = failed_retention
        self.lease_ms = lease_ms
        self._clock = clock
        self.logger = logger.bind(queue=name)

    @classmethod
    def from_settings(cls, settings, redis: Optional[Redis] = None) -> "JobQueue":
        client = redis or from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
        )
        return cls(
            client,
            name=settings.QUEUE_NAME,
            max_attempts=settings.SCRAPE_RETRY_ATTEMPTS,
            backoff_ms=settings.SCRAPE_BACKOFF_MS,
            failed_retention=settings.FAILED_JOB_RETENTION,
            # The lease must outlive one bounded attempt
            lease_ms=max(settings.JOB_LEASE_MS, settings.SCRAPE_TIMEOUT_MS * 2),
        )

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def backoff_delay_ms(self, attempts_made: int) -> int:
        """Delay before the next attempt after ``attempts_made`` failed attempts."""
        return self.backoff_ms * (2 ** max(0, attempts_made - 1))

    async def _waiting_score(self, record: ScrapeJobRecord) -> int:
        seq = await self._redis.incr(self._key("seq"))
        return queue_priority(record.data.priority) * _SEQ_SPAN + seq

    async def _save(self, record: ScrapeJobRecord) -> None:
        await self._redis.set(self._job_key(record.id), record.model_dump_json())

    async def get_job(self, job_id: str) -> Optional[ScrapeJobRecord]:
        raw = await self._redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return ScrapeJobRecord.model_validate_json(raw)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def add(self, request: ScrapeJobRequest, job_id: Optional[str] = None) -> ScrapeJobRecord:
        """Persist a job and make it available to workers.

        Args:
            request: Job payload
            job_id: Explicit id, generated if omitted. A job whose id is
                still queued, delayed or active is not added twice.

        Returns:
            The stored record (the existing one for a duplicate id)
        """
        record = ScrapeJobRecord(
            id=job_id or uuid.uuid4().hex,
            data=request,
            max_attempts=self.max_attempts,
            backoff_ms=self.backoff_ms,
            attempts_made=request.retry_count,
        )
        created = await self._redis.set(self._job_key(record.id), record.model_dump_json(), nx=True)
        if not created:
            self.logger.debug("job_already_queued", job_id=record.id)
            existing = await self.get_job(record.id)
            return existing or record

        await self._redis.zadd(self._key("waiting"), {record.id: await self._waiting_score(record)})

        self.logger.debug(
            "job_enqueued",
            job_id=record.id,
            product_id=request.product_id,
            marketplace=request.marketplace.value,
            priority=request.priority,
        )
        return record

    async def add_bulk(
        self, requests: Iterable[ScrapeJobRequest], dedupe_by_product: bool = False
    ) -> List[ScrapeJobRecord]:
        records = []
        for request in requests:
            job_id = f"product-{request.product_id}" if dedupe_by_product else None
            records.append(await self.add(request, job_id=job_id))
        if records:
            self.logger.info("jobs_enqueued", count=len(records))
        return records

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        """Move retries whose backoff has elapsed back into the waiting set."""
        due = await self._redis.zrangebyscore(self._key("delayed"), 0, self._now_ms())
        promoted = 0
        for job_id in due:
            # Only the caller that removes the id promotes it
            if not await self._redis.zrem(self._key("delayed"), job_id):
                continue
            record = await self.get_job(job_id)
            if record is None:
                continue
            record.state = JobState.WAITING
            await self._save(record)
            await self._redis.zadd(self._key("waiting"), {job_id: await self._waiting_score(record)})
            promoted += 1
        return promoted

    async def recover_stalled(self) -> int:
        """Fail the attempts of jobs whose worker lease has expired.

        Each expired job consumes one attempt and is rescheduled with backoff,
        or fails terminally once its attempts are used up.

        Returns:
            Number of jobs recovered
        """
        expired = await self._redis.zrangebyscore(self._key("active"), 0, self._now_ms())
        recovered = 0
        for job_id in expired:
            # Same guard as complete() and fail(): whoever removes the id owns it
            if not await self._redis.zrem(self._key("active"), job_id):
                continue
            record = await self.get_job(job_id)
            if record is None:
                continue
            self.logger.warning(
                "job_lease_expired",
                job_id=job_id,
                product_id=record.data.product_id,
                attempt=record.attempt_number,
            )
            error = TransientNetworkError(
                record.data.marketplace.value,
                "worker lease expired before the attempt was finalized",
            )
            await self._record_failure(record, error)
            recovered += 1
        return recovered

    async def dequeue(self) -> Optional[ScrapeJobRecord]:
        """Take the most urgent waiting job, or None if nothing is ready."""
        await self.recover_stalled()
        await self.promote_delayed()
        while True:
            popped = await self._redis.zpopmin(self._key("waiting"), 1)
            if not popped:
                return None
            job_id = popped[0][0]
            record = await self.get_job(job_id)
            if record is None:
                self.logger.warning("job_record_missing", job_id=job_id)
                continue

            record.state = JobState.ACTIVE
            record.processed_at = datetime.now(timezone.utc)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(record.id), record.model_dump_json())
                pipe.zadd(self._key("active"), {record.id: self._now_ms() + self.lease_ms})
                await pipe.execute()
            return record

    async def _release_active(self, record: ScrapeJobRecord) -> bool:
        return bool(await self._redis.zrem(self._key("active"), record.id))

    async def complete(self, record: ScrapeJobRecord) -> bool:
        """Discard a successfully processed job.

        Returns:
            False if the job had already been finalized
        """
        if not await self._release_active(record):
            return False
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._job_key(record.id))
            pipe.incr(self._key("completed_count"))
            await pipe.execute()
        return True

    async def fail(self, record: ScrapeJobRecord, error: ScraperError) -> str:
        """Record a failed attempt and either schedule a retry or fail terminally.

        Non-retryable errors fail the job immediately without consuming an
        attempt. Retryable errors consume one attempt; once ``max_attempts``
        is reached the job fails terminally.

        Args:
            record: Job returned by ``dequeue``
            error: Classified failure of the attempt

        Returns:
            RETRY_SCHEDULED, TERMINAL_FAILURE or ALREADY_FINALIZED
        """
        if not await self._release_active(record):
            return ALREADY_FINALIZED
        return await self._record_failure(record, error)

    async def _record_failure(self, record: ScrapeJobRecord, error: ScraperError) -> str:
        record.error_kind = error.kind
        record.error_message = error.detail

        if error.retryable:
            record.attempts_made += 1
            if record.attempts_made < record.max_attempts:
                delay_ms = self.backoff_delay_ms(record.attempts_made)
                record.state = JobState.DELAYED
                async with self._redis.pipeline(transaction=True) as pipe:
                    pipe.set(self._job_key(record.id), record.model_dump_json())
                    pipe.zadd(self._key("delayed"), {record.id: self._now_ms() + delay_ms})
                    await pipe.execute()
                self.logger.info(
                    "job_retry_scheduled",
                    job_id=record.id,
                    product_id=record.data.product_id,
                    attempt=record.attempts_made,
                    max_attempts=record.max_attempts,
                    delay_ms=delay_ms,
                    error_kind=error.kind,
                )
                return RETRY_SCHEDULED

        record.state = JobState.FAILED
        record.failed_at = datetime.now(timezone.utc)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._job_key(record.id))
            pipe.lpush(self._key("failed"), record.model_dump_json())
            pipe.ltrim(self._key("failed"), 0, self.failed_retention - 1)
            pipe.incr(self._key("failed_count"))
            await pipe.execute()

        self.logger.warning(
            "job_failed_terminal",
            job_id=record.id,
            product_id=record.data.product_id,
            marketplace=record.data.marketplace.value,
            attempts=record.attempts_made,
            error_kind=error.kind,
            error=error.detail,
        )
        return TERMINAL_FAILURE

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def get_failed(self, limit: int = 50) -> List[ScrapeJobRecord]:
        """Most recent terminally failed jobs, newest first."""
        raw = await self._redis.lrange(self._key("failed"), 0, max(0, limit - 1))
        return [ScrapeJobRecord.model_validate_json(item) for item in raw]

    async def get_stats(self) -> dict:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key("waiting"))
            pipe.zcard(self._key("delayed"))
            pipe.zcard(self._key("active"))
            pipe.llen(self._key("failed"))
            pipe.get(self._key("completed_count"))
            pipe.get(self._key("failed_count"))
            waiting, delayed, active, failed, completed_total, failed_total = await pipe.execute()
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "failed_retained": failed,
            "completed_total": int(completed_total or 0),
            "failed_total": int(failed_total or 0),
        }

    async def close(self) -> None:
        await self._redis.aclose()
