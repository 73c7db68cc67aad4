"""
Celery tasks for scrape execution.

Main task: scrape.run_job drives a ScrapeJob to completion with a fresh
engine inside asyncio.run(). Task-level retries are handled by the
supervisor, so the Celery task itself is never retried.
"""
from __future__ import annotations

import asyncio
import logging

from campaign_tracker.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_job_async(job_id: int) -> dict:
    from campaign_tracker.db import disposable_session_factory
    from campaign_tracker.services.scrape_jobs import WorkerPool, build_runner, get_job_with_stats
    from campaign_tracker.settings import get_settings

    settings = get_settings()
    async with disposable_session_factory() as session_factory:
        # asyncio primitives are loop-bound; each asyncio.run gets its own pool
        runner = build_runner(session_factory, pool=WorkerPool(settings.scrape_concurrency))
        await runner.execute(job_id)
        async with session_factory() as session:
            return await get_job_with_stats(session, job_id)


async def _run_cycle_async() -> dict:
    from campaign_tracker.db import disposable_session_factory
    from campaign_tracker.services.live_tracker import LiveTracker

    async with disposable_session_factory() as session_factory:
        return await LiveTracker(session_factory=session_factory).run_cycle()


def _jsonable(stats: dict) -> dict:
    return {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in stats.items()}


@celery_app.task(bind=True, name="scrape.run_job", queue="scrape")
def run_scrape_job(self, job_id: int) -> dict:
    logger.info(f"[worker] Starting scrape job {job_id} (celery_id={self.request.id})")
    try:
        stats = asyncio.run(_run_job_async(job_id))
    except Exception as e:
        logger.error(f"[worker] Scrape job {job_id} error: {e}")
        raise
    logger.info(f"[worker] Scrape job {job_id} finished: {stats['status']}")
    return _jsonable(stats)


@celery_app.task(name="scrape.run_live_tracker_cycle", queue="scrape")
def run_live_tracker_cycle() -> dict:
    """Run one live tracking cycle from a worker (celery beat)."""
    result = asyncio.run(_run_cycle_async())
    logger.info(f"[worker] Live tracker cycle: {result}")
    return result
