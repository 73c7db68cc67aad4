"""
Scrape task supervisor: runs one ScrapeTask attempt at a time.

Lifecycle of a task:
    queued -> running -> success
                      -> queued   (retryable failure, attempts < max; next_attempt_at set)
                      -> failed   (permanent failure or attempts exhausted)

Each transition is its own short transaction so that concurrent tasks do not
hold locks across the network call. The claim (queued -> running) is a
conditional UPDATE: a task can only be claimed once per attempt, and
terminal tasks are never re-run. Recording an outcome is conditional on the
task still being running; a task finalized elsewhere meanwhile (recovery,
watchdog) keeps its terminal state and the late result is dropped.

Backoff does not sleep here: a retryable failure puts the task back in the
queue with next_attempt_at, and the job runner picks it up when due.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from campaign_tracker.errors import FetchFailure, FetchTimeout, NotFoundError, RetriesExhausted
from campaign_tracker.integrations.fetcher import FetchedMetrics, MetricFetcher, is_retryable_error
from campaign_tracker.models import JobStatus, Platform, Post, ScrapeJob, ScrapeStatus, ScrapeTask, TaskStatus, utcnow
from campaign_tracker.services import history, redis_semaphore
from campaign_tracker.services.urls import coerce_platform
from campaign_tracker.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempts: int) -> float:
        """Delay before the next attempt after `attempts` tries: base * 2^(attempts-1), capped."""
        exponent = max(attempts, 1) - 1
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.scrape_max_attempts,
            base_delay=settings.scrape_retry_base_delay_sec,
            max_delay=settings.scrape_retry_max_delay_sec,
        )


class TaskOutcome(str, Enum):
    success = "success"
    retry = "retry"
    failed = "failed"
    skipped = "skipped"


class ScrapeSupervisor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        fetcher: MetricFetcher,
        policy: RetryPolicy | None = None,
        fetch_timeout: float | None = None,
        *,
        use_redis_semaphore: bool | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.policy = policy or RetryPolicy.from_settings()
        self.fetch_timeout = fetch_timeout if fetch_timeout is not None else settings.scrape_fetch_timeout_sec
        self.use_redis_semaphore = (
            settings.fetch_redis_semaphore_enabled if use_redis_semaphore is None else use_redis_semaphore
        )
        self._clock = clock

    async def run_task(self, task_id: int) -> TaskOutcome:
        """Run one attempt of a queued task and record its outcome."""
        claimed = await self._claim(task_id)
        if claimed is None:
            return TaskOutcome.skipped
        post_id, url, platform, attempts = claimed

        try:
            metrics = await self._fetch(url, platform)
        except Exception as exc:
            return await self._record_failure(task_id, post_id, attempts, exc)

        if not await self._record_success(task_id, post_id, metrics, measured_at=self._clock()):
            return TaskOutcome.skipped
        return TaskOutcome.success

    # ── transitions ──────────────────────────────────────────

    async def _claim(self, task_id: int) -> tuple[int, str, Platform, int] | None:
        async with self.session_factory() as session:
            task = await session.get(ScrapeTask, task_id)
            if task is None:
                raise NotFoundError("ScrapeTask", task_id)
            if task.status != TaskStatus.queued.value:
                logger.debug(f"[supervisor] Task {task_id} is {task.status}, not claiming")
                return None

            now = self._clock()
            result = await session.execute(
                update(ScrapeTask)
                .where(ScrapeTask.id == task_id, ScrapeTask.status == TaskStatus.queued.value)
                .values(
                    status=TaskStatus.running.value,
                    attempts=ScrapeTask.attempts + 1,
                    next_attempt_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.execute(
                update(Post)
                .where(Post.id == task.post_id)
                .values(scrape_status=ScrapeStatus.scraping.value)
                .execution_options(synchronize_session=False)
            )
            # the first claimed task starts the job
            await session.execute(
                update(ScrapeJob)
                .where(ScrapeJob.id == task.job_id, ScrapeJob.status == JobStatus.queued.value)
                .values(status=JobStatus.running.value, started_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            attempts = task.attempts + 1
            platform = coerce_platform(task.platform) or Platform.unknown
            logger.info(f"[supervisor] Task {task_id} attempt {attempts}/{self.policy.max_attempts}: {task.url}")
            return task.post_id, task.url, platform, attempts

    async def _fetch_bounded(self, url: str, platform: Platform) -> FetchedMetrics:
        try:
            return await asyncio.wait_for(self.fetcher.fetch(url, platform), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as exc:
            raise FetchTimeout(self.fetch_timeout, getattr(self.fetcher, "name", None)) from exc

    async def _fetch(self, url: str, platform: Platform) -> FetchedMetrics:
        if not self.use_redis_semaphore:
            return await self._fetch_bounded(url, platform)
        try:
            async with redis_semaphore.platform_slot(platform.value):
                return await self._fetch_bounded(url, platform)
        except TimeoutError as exc:
            # only the slot wait can raise a bare TimeoutError here
            raise FetchFailure(f"no free fetch slot for {platform.value}: {exc}", retryable=True) from exc

    async def _record_success(
        self, task_id: int, post_id: int, metrics: FetchedMetrics, *, measured_at: datetime
    ) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(ScrapeTask)
                .where(ScrapeTask.id == task_id, ScrapeTask.status == TaskStatus.running.value)
                .values(
                    status=TaskStatus.success.value,
                    last_error=None,
                    result_views=metrics.views,
                    result_likes=metrics.likes,
                    result_comments=metrics.comments,
                    result_shares=metrics.shares,
                    updated_at=measured_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                self._dropped(task_id)
                return False

            post = await session.get(Post, post_id)
            if post is None:
                logger.info(f"[supervisor] Post {post_id} deleted while task {task_id} ran; result dropped")
                await session.commit()
                return True

            # An older measurement finishing late must not overwrite a newer one.
            latest_values = {
                "views": metrics.views,
                "likes": metrics.likes,
                "comments": metrics.comments,
                "shares": metrics.shares,
                "engagement_rate": metrics.engagement_rate,
                "last_scraped_at": measured_at,
            }
            if metrics.external_post_id and not post.external_post_id:
                latest_values["external_post_id"] = metrics.external_post_id
            await session.execute(
                update(Post)
                .where(
                    Post.id == post_id,
                    or_(Post.last_scraped_at.is_(None), Post.last_scraped_at <= measured_at),
                )
                .values(**latest_values)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(Post)
                .where(Post.id == post_id)
                .values(scrape_status=ScrapeStatus.scraped.value, error_message=None)
                .execution_options(synchronize_session=False)
            )
            history.append_snapshot(
                session,
                post_id,
                views=metrics.views,
                likes=metrics.likes,
                comments=metrics.comments,
                shares=metrics.shares,
                recorded_at=measured_at,
            )
            await session.commit()
        logger.info(
            f"[supervisor] Task {task_id} success: views={metrics.views} likes={metrics.likes} "
            f"comments={metrics.comments} shares={metrics.shares}"
        )
        return True

    async def _record_failure(self, task_id: int, post_id: int, attempts: int, exc: BaseException) -> TaskOutcome:
        message = (str(exc) or exc.__class__.__name__)[:1000]
        retryable = is_retryable_error(exc)
        now = self._clock()

        async with self.session_factory() as session:
            if retryable and attempts < self.policy.max_attempts:
                delay = self.policy.delay_for(attempts)
                result = await session.execute(
                    update(ScrapeTask)
                    .where(ScrapeTask.id == task_id, ScrapeTask.status == TaskStatus.running.value)
                    .values(
                        status=TaskStatus.queued.value,
                        last_error=message,
                        next_attempt_at=now + timedelta(seconds=delay),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return self._dropped(task_id)
                await session.commit()
                logger.warning(
                    f"[supervisor] Task {task_id} attempt {attempts} failed ({message}); retry in {delay:g}s"
                )
                return TaskOutcome.retry

            result = await session.execute(
                update(ScrapeTask)
                .where(ScrapeTask.id == task_id, ScrapeTask.status == TaskStatus.running.value)
                .values(status=TaskStatus.failed.value, last_error=message, next_attempt_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return self._dropped(task_id)
            await session.execute(
                update(Post)
                .where(Post.id == post_id)
                .values(scrape_status=ScrapeStatus.error.value, error_message=message)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if retryable:
            logger.warning(f"[supervisor] {RetriesExhausted(task_id, attempts, message)}")
        else:
            logger.warning(f"[supervisor] Task {task_id} failed permanently: {message}")
        return TaskOutcome.failed

    @staticmethod
    def _dropped(task_id: int) -> TaskOutcome:
        logger.warning(f"[supervisor] Task {task_id} no longer running; result dropped")
        return TaskOutcome.skipped
