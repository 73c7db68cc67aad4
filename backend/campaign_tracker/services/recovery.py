"""
Recovery of interrupted scrape work.

On startup every queued/running job belongs to a process that no longer
exists: its non-terminal tasks are marked failed ("interrupted") and the job
is finalized. Interrupted tasks are never resumed; the next refresh creates a
new job.

The periodic watchdog applies the same treatment to jobs whose tasks have
shown no activity for STUCK_JOB_MINUTES.

Posts left in `scraping` are restored to `scraped` (they have a previous
successful measurement) or `pending`.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.models import (
    ACTIVE_JOB_STATUSES,
    JobStatus,
    Post,
    ScrapeJob,
    ScrapeStatus,
    ScrapeTask,
    TaskStatus,
)
from campaign_tracker.services.scrape_jobs import refresh_job_status
from campaign_tracker.settings import get_settings

logger = logging.getLogger(__name__)

NON_TERMINAL_TASK_STATUSES = (TaskStatus.queued.value, TaskStatus.running.value)


async def _stale_jobs(session: AsyncSession, cutoff: datetime | None) -> list[tuple[ScrapeJob, datetime]]:
    last_activity = (
        select(ScrapeTask.job_id, func.max(ScrapeTask.updated_at).label("last_activity"))
        .group_by(ScrapeTask.job_id)
        .subquery()
    )
    result = await session.execute(
        select(ScrapeJob, last_activity.c.last_activity)
        .outerjoin(last_activity, last_activity.c.job_id == ScrapeJob.id)
        .where(ScrapeJob.status.in_(ACTIVE_JOB_STATUSES))
        .order_by(ScrapeJob.id)
    )
    jobs = []
    for job, activity in result.all():
        seen = activity or job.started_at or job.created_at
        if seen is not None and seen.tzinfo is None:
            seen = seen.replace(tzinfo=timezone.utc)
        if cutoff is None or seen < cutoff:
            jobs.append((job, seen))
    return jobs


async def _restore_posts(session: AsyncSession, post_ids: list[int] | None) -> int:
    """Posts stuck in `scraping`: back to scraped if ever measured, else pending."""
    base = [Post.scrape_status == ScrapeStatus.scraping.value]
    if post_ids is not None:
        if not post_ids:
            return 0
        base.append(Post.id.in_(post_ids))
    scraped = await session.execute(
        update(Post)
        .where(and_(*base, Post.last_scraped_at.is_not(None)))
        .values(scrape_status=ScrapeStatus.scraped.value)
        .execution_options(synchronize_session=False)
    )
    pending = await session.execute(
        update(Post)
        .where(and_(*base, Post.last_scraped_at.is_(None)))
        .values(scrape_status=ScrapeStatus.pending.value)
        .execution_options(synchronize_session=False)
    )
    return (scraped.rowcount or 0) + (pending.rowcount or 0)


async def reconcile_interrupted_jobs(
    session: AsyncSession,
    older_than: timedelta | None = None,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Finalize non-terminal jobs; older_than=None means every active job (startup).

    Returns a report dict.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - older_than if older_than is not None else None
    stale = await _stale_jobs(session, cutoff)

    items: list[dict] = []
    tasks_failed = 0
    post_ids: list[int] = []
    reason = "interrupted: process restarted" if older_than is None else (
        f"interrupted: no progress for {int(older_than.total_seconds() // 60)}m"
    )

    for job, seen in stale:
        tasks_q = await session.execute(
            select(ScrapeTask.id, ScrapeTask.post_id)
            .where(ScrapeTask.job_id == job.id, ScrapeTask.status.in_(NON_TERMINAL_TASK_STATUSES))
        )
        open_tasks = tasks_q.all()
        item = {
            "job_id": job.id,
            "campaign_id": job.campaign_id,
            "old_status": job.status,
            "idle_minutes": round((now - seen).total_seconds() / 60) if seen else None,
            "open_tasks": len(open_tasks),
            "action": "would_fail" if dry_run else "failed",
        }
        items.append(item)
        tasks_failed += len(open_tasks)
        post_ids.extend(post_id for _, post_id in open_tasks)

        if dry_run:
            continue
        if open_tasks:
            await session.execute(
                update(ScrapeTask)
                .where(ScrapeTask.job_id == job.id, ScrapeTask.status.in_(NON_TERMINAL_TASK_STATUSES))
                .values(status=TaskStatus.failed.value, last_error=reason, next_attempt_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )

    posts_restored = 0
    if not dry_run:
        posts_restored = await _restore_posts(session, None if older_than is None else post_ids)
        await session.commit()
        for item in items:
            job = await refresh_job_status(session, item["job_id"])
            item["new_status"] = job.status

    logger.info(
        f"[recovery] Reconciled {len(items)} jobs, {tasks_failed} tasks failed, "
        f"{posts_restored} posts restored (dry_run={dry_run})"
    )

    if items and not dry_run:
        from campaign_tracker.services.notify import notify_warn

        summary = ", ".join(f"job#{it['job_id']}({it['open_tasks']} tasks)" for it in items[:10])
        await notify_warn(f"Recovered {len(items)} interrupted scrape jobs", summary)

    return {
        "jobs_reconciled": len(items),
        "tasks_failed": tasks_failed,
        "posts_restored": posts_restored,
        "items": items,
        "dry_run": dry_run,
        "run_at": now.isoformat(),
        "older_than_minutes": int(older_than.total_seconds() // 60) if older_than is not None else None,
    }


async def run_watchdog(session: AsyncSession, *, dry_run: bool = False) -> dict[str, Any]:
    settings = get_settings()
    return await reconcile_interrupted_jobs(
        session, timedelta(minutes=settings.stuck_job_minutes), dry_run=dry_run
    )


async def get_health(session: AsyncSession) -> dict[str, Any]:
    """Return scrape system health overview."""
    settings = get_settings()
    now = datetime.now(timezone.utc)

    job_counts_q = await session.execute(
        select(ScrapeJob.status, func.count(ScrapeJob.id)).group_by(ScrapeJob.status)
    )
    task_counts_q = await session.execute(
        select(ScrapeTask.status, func.count(ScrapeTask.id)).group_by(ScrapeTask.status)
    )
    post_counts_q = await session.execute(
        select(Post.scrape_status, func.count(Post.id)).group_by(Post.scrape_status)
    )
    stuck = await _stale_jobs(session, now - timedelta(minutes=settings.stuck_job_minutes))

    from campaign_tracker.services.live_tracker import get_instance

    return {
        "jobs": {status.value: 0 for status in JobStatus} | dict(job_counts_q.all()),
        "tasks": {status.value: 0 for status in TaskStatus} | dict(task_counts_q.all()),
        "posts": dict(post_counts_q.all()),
        "stuck_jobs": len(stuck),
        "live_tracker": get_instance().status(),
        "scheduler_enabled": settings.scheduler_enabled,
        "watchdog_enabled": settings.watchdog_enabled,
        "celery_enabled": settings.celery_enabled,
        "scrape_concurrency": settings.scrape_concurrency,
        "checked_at": now.isoformat(),
    }
