"""Date buckets processed one after another by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional

from .catalog import date_range, format_api_date

DEFAULT_ARTIFACT_PREFIX = "NETINTERNET-GIH-DNS_250k"


@dataclass(frozen=True)
class DateBucket:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"bucket start {self.start} is after end {self.end}")

    @property
    def is_single_day(self) -> bool:
        return self.start == self.end

    @property
    def label(self) -> str:
        if self.is_single_day:
            return format_api_date(self.start)
        return f"{format_api_date(self.start)}-{format_api_date(self.end)}"

    def artifact_name(self, prefix: str = DEFAULT_ARTIFACT_PREFIX) -> str:
        return f"{prefix}-{self.label}.txt"


def daily_buckets(days: int, end: Optional[date] = None) -> List[DateBucket]:
    """One bucket per day, newest first, ending at ``end`` (default yesterday)."""
    if days < 1:
        raise ValueError("days must be at least 1")
    if end is None:
        _, end = date_range(days)
    return [DateBucket(day, day) for day in (end - timedelta(days=offset) for offset in range(days))]


def range_bucket(days: int, end: Optional[date] = None) -> List[DateBucket]:
    """A single bucket spanning ``days`` days ending at ``end`` (default yesterday)."""
    if days < 1:
        raise ValueError("days must be at least 1")
    if end is None:
        _, end = date_range(days)
    return [DateBucket(end - timedelta(days=days - 1), end)]


def build_partition(mode: str, days: int, end: Optional[date] = None) -> List[DateBucket]:
    if mode == "daily":
        return daily_buckets(days, end)
    if mode == "range":
        return range_bucket(days, end)
    raise ValueError(f"Unknown partition mode '{mode}'.")
