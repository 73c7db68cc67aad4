"""
Scrape job coordinator: one job per refresh request, one task per post.

Job status is derived from its tasks:
  queued   -> no task has started
  running  -> at least one task started, not all terminal
  done     -> all tasks terminal and all succeeded
  failed   -> all tasks terminal and at least one failed

A campaign has at most one queued/running job. start_job checks first and
the partial unique index uq_scrape_jobs_active_campaign settles races.

Execution:
  - JobRunner.execute() drives a job to completion in-process, bounded by a
    shared WorkerPool (SCRAPE_CONCURRENCY concurrent attempts per process).
  - dispatch_job() hands a job to Celery (CELERY_ENABLED) or to a
    fire-and-forget asyncio task.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campaign_tracker.errors import AlreadyRunningError, NotFoundError, ValidationError
from campaign_tracker.models import (
    ACTIVE_JOB_STATUSES,
    Campaign,
    JobStatus,
    Post,
    ScrapeJob,
    ScrapeTask,
    TaskStatus,
    utcnow,
)
from campaign_tracker.services.post_registry import is_schedulable
from campaign_tracker.services.scrape_supervisor import ScrapeSupervisor, TaskOutcome
from campaign_tracker.settings import get_settings

logger = logging.getLogger(__name__)


class WorkerPool:
    """Bounds concurrent task attempts across every job in the process."""

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("worker pool size must be >= 1")
        self.size = size
        self._semaphore = asyncio.Semaphore(size)
        self.active = 0
        self.peak = 0

    @asynccontextmanager
    async def slot(self):
        async with self._semaphore:
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                yield
            finally:
                self.active -= 1


_worker_pool: WorkerPool | None = None


def get_worker_pool() -> WorkerPool:
    global _worker_pool
    if _worker_pool is None:
        _worker_pool = WorkerPool(get_settings().scrape_concurrency)
    return _worker_pool


# ── Job creation ─────────────────────────────────────────────

async def get_active_job(session: AsyncSession, campaign_id: int) -> ScrapeJob | None:
    result = await session.execute(
        select(ScrapeJob)
        .where(ScrapeJob.campaign_id == campaign_id, ScrapeJob.status.in_(ACTIVE_JOB_STATUSES))
        .order_by(ScrapeJob.created_at.desc(), ScrapeJob.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def start_job(
    session: AsyncSession,
    campaign_id: int,
    post_ids: list[int] | None = None,
    *,
    trigger: str = "manual",
) -> ScrapeJob:
    """Create a queued job with one task per eligible post.

    Raises NotFoundError, ValidationError (no eligible posts, foreign post ids)
    or AlreadyRunningError.
    """
    campaign = await session.get(Campaign, campaign_id)
    if not campaign:
        raise NotFoundError("Campaign", campaign_id)

    active = await get_active_job(session, campaign_id)
    if active:
        raise AlreadyRunningError(campaign_id, active.id)

    query = select(Post).where(Post.campaign_id == campaign_id)
    if post_ids is not None:
        query = query.where(Post.id.in_(post_ids))
    posts = list((await session.execute(query.order_by(Post.id))).scalars().all())

    if post_ids is not None:
        missing = sorted(set(post_ids) - {p.id for p in posts})
        if missing:
            raise ValidationError(
                f"posts {missing} do not belong to campaign {campaign_id}", field="post_ids"
            )

    eligible = [p for p in posts if is_schedulable(p)]
    if not eligible:
        raise ValidationError("no eligible posts to scrape", field="post_ids")

    job = ScrapeJob(campaign_id=campaign_id, status=JobStatus.queued.value, trigger=trigger)
    session.add(job)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        active = await get_active_job(session, campaign_id)
        raise AlreadyRunningError(campaign_id, active.id if active else None) from exc

    for post in eligible:
        session.add(ScrapeTask(
            job_id=job.id,
            post_id=post.id,
            url=post.url,
            platform=post.platform,
            status=TaskStatus.queued.value,
        ))
    await session.commit()
    await session.refresh(job)

    skipped = len(posts) - len(eligible)
    logger.info(
        f"[scrape_jobs] Created job {job.id} for campaign {campaign_id} "
        f"({len(eligible)} tasks, {skipped} placeholders skipped, trigger={trigger})"
    )
    return job


# ── Status derivation ────────────────────────────────────────

async def _task_counts(session: AsyncSession, job_id: int) -> tuple[dict[str, int], int]:
    result = await session.execute(
        select(ScrapeTask.status, func.count(ScrapeTask.id), func.max(ScrapeTask.attempts))
        .where(ScrapeTask.job_id == job_id)
        .group_by(ScrapeTask.status)
    )
    counts = {status.value: 0 for status in TaskStatus}
    max_attempts = 0
    for status, count, attempts in result.all():
        counts[status] = count
        max_attempts = max(max_attempts, attempts or 0)
    return counts, max_attempts


async def refresh_job_status(session: AsyncSession, job_id: int) -> ScrapeJob:
    """Re-derive a job's status from its tasks. Terminal jobs are left untouched."""
    job = await session.get(ScrapeJob, job_id)
    if not job:
        raise NotFoundError("ScrapeJob", job_id)
    if job.is_terminal:
        return job

    counts, max_attempts = await _task_counts(session, job_id)
    total = sum(counts.values())
    pending = counts[TaskStatus.queued.value] + counts[TaskStatus.running.value]
    now = utcnow()

    if pending == 0:
        new_status = JobStatus.failed.value if counts[TaskStatus.failed.value] else JobStatus.done.value
        result = await session.execute(
            update(ScrapeJob)
            .where(ScrapeJob.id == job_id, ScrapeJob.status.in_(ACTIVE_JOB_STATUSES))
            .values(
                status=new_status,
                started_at=func.coalesce(ScrapeJob.started_at, now),
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount == 1:
            logger.info(
                f"[scrape_jobs] Job {job_id} {new_status}: {counts[TaskStatus.success.value]}/{total} succeeded, "
                f"{counts[TaskStatus.failed.value]} failed"
            )
            if new_status == JobStatus.failed.value:
                from campaign_tracker.services.notify import notify_warn

                await notify_warn(
                    f"Scrape job {job_id} failed",
                    f"campaign={job.campaign_id} failed={counts[TaskStatus.failed.value]}/{total}",
                )
    elif job.status == JobStatus.queued.value and (total - counts[TaskStatus.queued.value] > 0 or max_attempts > 0):
        await session.execute(
            update(ScrapeJob)
            .where(ScrapeJob.id == job_id, ScrapeJob.status == JobStatus.queued.value)
            .values(status=JobStatus.running.value, started_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    await session.refresh(job)
    return job


# ── Reads ────────────────────────────────────────────────────

async def get_job(session: AsyncSession, job_id: int) -> ScrapeJob:
    job = await session.get(ScrapeJob, job_id)
    if not job:
        raise NotFoundError("ScrapeJob", job_id)
    return job


async def get_job_with_stats(session: AsyncSession, job_id: int) -> dict[str, Any]:
    """Job row plus progress counts computed from its tasks."""
    job = await get_job(session, job_id)
    counts, _ = await _task_counts(session, job_id)
    total = sum(counts.values())
    return {
        "id": job.id,
        "campaign_id": job.campaign_id,
        "status": job.status,
        "trigger": job.trigger,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "total_tasks": total,
        "completed_tasks": counts[TaskStatus.success.value] + counts[TaskStatus.failed.value],
        "successful_tasks": counts[TaskStatus.success.value],
        "failed_tasks": counts[TaskStatus.failed.value],
        "queued_tasks": counts[TaskStatus.queued.value],
        "running_tasks": counts[TaskStatus.running.value],
    }


async def get_tasks(session: AsyncSession, job_id: int) -> list[ScrapeTask]:
    await get_job(session, job_id)
    result = await session.execute(
        select(ScrapeTask).where(ScrapeTask.job_id == job_id).order_by(ScrapeTask.id)
    )
    return list(result.scalars().all())


# ── Execution ────────────────────────────────────────────────

class JobRunner:
    """Drives every task of a job to a terminal state."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        supervisor: ScrapeSupervisor,
        pool: WorkerPool | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.supervisor = supervisor
        self.pool = pool or get_worker_pool()
        self._clock = clock
        self._sleep = sleep

    async def execute(self, job_id: int) -> ScrapeJob:
        async with self.session_factory() as session:
            job = await get_job(session, job_id)
            if job.is_terminal:
                return job

        logger.info(f"[scrape_jobs] Executing job {job_id} (pool size {self.pool.size})")
        while True:
            due, next_due = await self._due_tasks(job_id)
            if due:
                await asyncio.gather(*(self._run_one(job_id, task_id) for task_id in due))
                continue
            if next_due is None:
                break
            wait = (next_due - self._clock()).total_seconds()
            await self._sleep(max(wait, 0.0))

        async with self.session_factory() as session:
            return await refresh_job_status(session, job_id)

    async def _due_tasks(self, job_id: int) -> tuple[list[int], datetime | None]:
        """Queued tasks ready now, and the earliest retry time of those that are not."""
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScrapeTask.id, ScrapeTask.next_attempt_at)
                .where(ScrapeTask.job_id == job_id, ScrapeTask.status == TaskStatus.queued.value)
                .order_by(ScrapeTask.id)
            )
            rows = result.all()
        due = [task_id for task_id, at in rows if at is None or at <= now]
        waiting = [at for _, at in rows if at is not None and at > now]
        return due, min(waiting) if waiting else None

    async def _run_one(self, job_id: int, task_id: int) -> TaskOutcome:
        async with self.pool.slot():
            try:
                outcome = await self.supervisor.run_task(task_id)
            except Exception as exc:
                logger.exception(f"[scrape_jobs] Task {task_id} crashed: {exc}")
                await self._fail_task(task_id, f"internal error: {exc}")
                outcome = TaskOutcome.failed

        async with self.session_factory() as session:
            await refresh_job_status(session, job_id)
        return outcome

    async def _fail_task(self, task_id: int, message: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(ScrapeTask)
                .where(ScrapeTask.id == task_id, ScrapeTask.status.in_((TaskStatus.queued.value, TaskStatus.running.value)))
                .values(status=TaskStatus.failed.value, last_error=message[:1000], updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()


def build_runner(session_factory: async_sessionmaker, *, pool: WorkerPool | None = None) -> JobRunner:
    """Runner wired with the configured fetcher and retry policy."""
    from campaign_tracker.integrations.apify_fetcher import get_metric_fetcher

    supervisor = ScrapeSupervisor(session_factory, get_metric_fetcher())
    return JobRunner(session_factory, supervisor, pool)


async def run_job_background(job_id: int, session_factory: async_sessionmaker | None = None) -> None:
    """Execute a job in a fire-and-forget task; errors are logged, never raised."""
    try:
        if session_factory is None:
            from campaign_tracker.db import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        job = await build_runner(session_factory).execute(job_id)
        logger.info(f"[scrape_jobs] Background job {job_id} finished: {job.status}")
    except Exception as e:
        logger.error(f"[scrape_jobs] Background job {job_id} error: {e}")
        from campaign_tracker.services.notify import notify_error

        await notify_error(f"Background scrape job {job_id} crashed", str(e))


_background_tasks: set[asyncio.Task] = set()


def dispatch_job(job_id: int) -> str:
    """Hand a created job to the worker. Returns "celery" or "inline"."""
    settings = get_settings()
    if settings.celery_enabled:
        from campaign_tracker.worker.tasks import run_scrape_job

        run_scrape_job.apply_async(args=[job_id], queue="scrape")
        logger.info(f"[scrape_jobs] Job {job_id} sent to celery")
        return "celery"

    task = asyncio.create_task(run_job_background(job_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return "inline"
