"""
Circuit breaker around a metric fetcher.

CLOSED: calls pass through; consecutive failures are counted.
OPEN: after `failure_threshold` failures, calls are rejected until
`reset_timeout` seconds have passed.
HALF_OPEN: one trial call; success closes the circuit, failure re-opens it.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum

from campaign_tracker.errors import FetchFailure
from campaign_tracker.integrations.fetcher import FetchedMetrics, MetricFetcher
from campaign_tracker.models import Platform

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    closed = "CLOSED"
    open = "OPEN"
    half_open = "HALF_OPEN"


class CircuitBreaker:
    def __init__(
        self,
        fetcher: MetricFetcher,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetcher = fetcher
        self.name = getattr(fetcher, "name", "fetcher")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.closed
        self.failure_count = 0
        self.next_attempt_at: float | None = None

    async def fetch(self, url: str, platform: Platform) -> FetchedMetrics:
        if self.state is CircuitState.open:
            if self._clock() < (self.next_attempt_at or 0.0):
                raise FetchFailure(
                    f"circuit breaker open for {self.name}; temporary rejection",
                    retryable=True,
                    provider=self.name,
                )
            self.state = CircuitState.half_open
            logger.info(f"[circuit_breaker] {self.name} HALF_OPEN, trying one request")

        try:
            result = await self.fetcher.fetch(url, platform)
        except FetchFailure as exc:
            # Permanent failures are about the post, not the provider.
            if exc.retryable:
                self._on_failure()
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        if self.state is CircuitState.half_open:
            logger.info(f"[circuit_breaker] {self.name} CLOSED, provider recovered")
        self.state = CircuitState.closed
        self.failure_count = 0
        self.next_attempt_at = None

    def _on_failure(self) -> None:
        self.failure_count += 1
        if self.state is CircuitState.half_open or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.open
            self.next_attempt_at = self._clock() + self.reset_timeout
            logger.error(
                f"[circuit_breaker] {self.name} OPEN after {self.failure_count} failures, "
                f"retry in {self.reset_timeout:g}s"
            )

    def reset(self) -> None:
        self.state = CircuitState.closed
        self.failure_count = 0
        self.next_attempt_at = None

    def stats(self) -> dict:
        return {
            "provider": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "next_attempt_at": self.next_attempt_at,
        }
