"""Pydantic schemas for scrape jobs.

``ScrapeJobRequest`` is what a producer submits; ``ScrapeJobRecord`` is what
the queue stores in Redis and hands to workers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from pricewatch.scrapers.base import Marketplace

# Producer-facing priority range; higher means more urgent
MIN_PRIORITY = 0
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    FAILED = "failed"


class ScrapeJobRequest(BaseModel):
    """A request to scrape one product page."""

    product_id: str = Field(..., min_length=1, description="Primary key of the product row")
    url: str = Field(..., min_length=1, description="Product page URL")
    marketplace: Marketplace
    marketplace_id: str = Field(..., min_length=1, description="ASIN, listing ID or article number")
    priority: int = Field(
        DEFAULT_PRIORITY,
        ge=MIN_PRIORITY,
        le=MAX_PRIORITY,
        description="Urgency, 10 is most urgent",
    )
    retry_count: int = Field(0, ge=0, description="Attempts already made before submission")


class ScrapeJobRecord(BaseModel):
    """A job as persisted in the queue."""

    id: str
    data: ScrapeJobRequest
    max_attempts: int = Field(3, ge=1)
    backoff_ms: int = Field(2000, ge=0)
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    created_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def attempt_number(self) -> int:
        """1-based number of the attempt currently running."""
        return self.attempts_made + 1
