"""
Metric fetcher contract.

A fetcher takes a post URL and platform and returns the current counters, or
raises FetchFailure. How the numbers are obtained is up to the
implementation.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from campaign_tracker.errors import FetchFailure
from campaign_tracker.models import Platform

RETRYABLE_PATTERNS = (
    "429", "500", "502", "503", "504",
    "timeout", "timed out", "network", "connection",
    "econnreset", "etimedout", "temporary",
)

PERMANENT_PATTERNS = (
    "not configured",
    "credit limit",
    "private or deleted",
    "authentication required",
    "requires authentication",
    "api subscription",
    "paid api access",
    "unsupported platform",
)


@dataclass
class FetchedMetrics:
    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    engagement_rate: float = 0.0
    external_post_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def total_engagement(self) -> int:
        return self.likes + self.comments + self.shares


class MetricFetcher(Protocol):
    name: str

    async def fetch(self, url: str, platform: Platform) -> FetchedMetrics:
        ...


def is_retryable_error(exc: BaseException) -> bool:
    """FetchFailure decides for itself; anything else is judged by its message."""
    if isinstance(exc, FetchFailure):
        return exc.retryable
    message = str(exc).lower()
    if any(p in message for p in PERMANENT_PATTERNS):
        return False
    return any(p in message for p in RETRYABLE_PATTERNS)


def engagement_rate(views: int, likes: int, comments: int, shares: int) -> float:
    """Percent of views that engaged, rounded to 2 places."""
    if views <= 0:
        return 0.0
    return round((likes + comments + shares) / views * 100, 2)
