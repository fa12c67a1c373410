"""Pydantic schemas for PriceWatch.

All queue payload models are defined here for easy import.
"""

from pricewatch.schemas.job import JobState, ScrapeJobRecord, ScrapeJobRequest

__all__ = [
    "JobState",
    "ScrapeJobRecord",
    "ScrapeJobRequest",
]
