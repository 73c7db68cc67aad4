"""
Live Tracker Scheduler

Keeps campaign metrics fresh without user action:
- every LIVE_TRACKER_INTERVAL_MINUTES, start a scrape job for each campaign
  that has eligible posts and run them through the shared worker pool
- every WATCHDOG_INTERVAL_MINUTES, finalize jobs with no progress for
  STUCK_JOB_MINUTES

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- On other databases (tests, local sqlite) the lock is always granted

Controlled by SCHEDULER_ENABLED and LIVE_TRACKER_ENABLED (default: true).
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campaign_tracker.db import make_session_factory
from campaign_tracker.errors import AlreadyRunningError, ValidationError
from campaign_tracker.models import Post, utcnow
from campaign_tracker.services.post_registry import is_schedulable
from campaign_tracker.services.scrape_jobs import JobRunner, WorkerPool, build_runner, start_job
from campaign_tracker.settings import get_settings

logger = logging.getLogger("live_tracker")

# Advisory lock keys (arbitrary int64, unique per job type)
LOCK_LIVE_TRACKER = 910_001
LOCK_WATCHDOG = 910_002

JOB_LIVE_TRACKER = "live_tracker"
JOB_WATCHDOG = "scrape_watchdog"


class LiveTracker:
    """Periodic refresh of every tracked campaign.

    Uses Postgres pg_try_advisory_lock on each tick so that only one
    backend instance executes the cycle while the others skip.
    """

    _instance: "LiveTracker | None" = None

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        pool: WorkerPool | None = None,
        runner_factory: Callable[..., JobRunner] = build_runner,
    ):
        settings = get_settings()
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._session_factory = session_factory
        self._clock = clock
        self._pool = pool
        self._runner_factory = runner_factory
        self.interval_minutes = settings.live_tracker_interval_minutes
        self._scheduled = False
        self._cycle_running = False
        self.last_run_at: datetime | None = None
        self.last_result: dict[str, Any] | None = None

    @classmethod
    def get_instance(cls) -> "LiveTracker":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.stop()
        cls._instance = None

    def configure(self, database_url: str | None = None, *, session_factory: async_sessionmaker | None = None):
        """Configure database connection."""
        if session_factory is not None:
            self._session_factory = session_factory
        elif database_url:
            self._session_factory = make_session_factory(database_url)

    def _get_session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self.configure(get_settings().async_database_url)
        return self._session_factory

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Non-blocking session-level advisory lock; granted outright off Postgres."""
        conn = await session.connection()
        if conn.dialect.name != "postgresql":
            return True
        result = await session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int):
        conn = await session.connection()
        if conn.dialect.name == "postgresql":
            await session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    # ── lifecycle ────────────────────────────────────────────

    def start(self, *, force: bool = False) -> bool:
        """Schedule the periodic cycle. Returns whether the tracker is scheduled."""
        settings = get_settings()
        if not force and not (settings.scheduler_enabled and settings.live_tracker_enabled):
            logger.info("Live tracker DISABLED by SCHEDULER_ENABLED/LIVE_TRACKER_ENABLED, skipping start")
            return False
        if self._scheduled:
            return True

        self.scheduler.add_job(
            self.run_cycle,
            IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_LIVE_TRACKER,
            name="Live tracking cycle",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if settings.watchdog_enabled:
            self.scheduler.add_job(
                self.run_watchdog,
                IntervalTrigger(minutes=settings.watchdog_interval_minutes),
                id=JOB_WATCHDOG,
                name="Scrape job watchdog",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        self._scheduled = True
        logger.info(f"Live tracker started ({self.interval_minutes} minute interval)")
        return True

    def stop(self) -> None:
        if not self._scheduled:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduled = False
        logger.info("Live tracker stopped")

    def status(self) -> dict[str, Any]:
        next_run_at = None
        if self._scheduled:
            job = self.scheduler.get_job(JOB_LIVE_TRACKER)
            if job and job.next_run_time:
                next_run_at = job.next_run_time.isoformat()
        return {
            "is_running": self._cycle_running,
            "is_scheduled": self._scheduled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": next_run_at,
            "interval_minutes": self.interval_minutes,
            "last_result": self.last_result,
        }

    # ── ticks ────────────────────────────────────────────────

    async def run_cycle(self) -> dict[str, Any]:
        """One tracking pass. A pass already in progress makes this a no-op."""
        if self._cycle_running:
            logger.info("[live_tracker] Cycle already running, skipping")
            return {"skipped": True, "reason": "already_running"}

        self._cycle_running = True
        self.last_run_at = self._clock()
        try:
            session_factory = self._get_session_factory()
            async with session_factory() as lock_session:
                if not await self._try_advisory_lock(lock_session, LOCK_LIVE_TRACKER):
                    logger.debug("[live_tracker] Advisory lock not acquired, another instance is leader")
                    return {"skipped": True, "reason": "not_leader"}
                try:
                    result = await self._run_cycle(session_factory)
                finally:
                    await self._release_advisory_lock(lock_session, LOCK_LIVE_TRACKER)
            self.last_result = result
            return result
        except Exception as e:
            logger.exception(f"[live_tracker] Cycle error: {e}")
            self.last_result = {"error": str(e)}
            from campaign_tracker.services.notify import notify_error

            await notify_error("Live tracker cycle failed", str(e))
            return self.last_result
        finally:
            self._cycle_running = False

    async def _eligible_campaigns(self, session_factory: async_sessionmaker) -> list[int]:
        async with session_factory() as session:
            result = await session.execute(
                select(Post.campaign_id, Post.url, Post.platform).order_by(Post.campaign_id)
            )
            rows = result.all()
        campaign_ids: list[int] = []
        for campaign_id, url, platform in rows:
            if campaign_id not in campaign_ids and is_schedulable({"url": url, "platform": platform}):
                campaign_ids.append(campaign_id)
        return campaign_ids

    async def _run_cycle(self, session_factory: async_sessionmaker) -> dict[str, Any]:
        campaign_ids = await self._eligible_campaigns(session_factory)
        logger.info(f"[live_tracker] LEADER, {len(campaign_ids)} campaigns with trackable posts")

        started: list[int] = []
        skipped: list[dict] = []
        for campaign_id in campaign_ids:
            async with session_factory() as session:
                try:
                    job = await start_job(session, campaign_id, trigger="live_tracker")
                    started.append(job.id)
                except AlreadyRunningError as exc:
                    logger.info(f"[live_tracker] Campaign {campaign_id} already has job {exc.job_id}, skipping")
                    skipped.append({"campaign_id": campaign_id, "reason": "already_running", "job_id": exc.job_id})
                except ValidationError as exc:
                    skipped.append({"campaign_id": campaign_id, "reason": exc.message})

        done: list[int] = []
        failed: list[int] = []
        errors: list[dict] = []
        if started:
            runner = self._runner_factory(session_factory, pool=self._pool)
            results = await asyncio.gather(*(runner.execute(job_id) for job_id in started), return_exceptions=True)
            for job_id, outcome in zip(started, results):
                if isinstance(outcome, Exception):
                    logger.error(f"[live_tracker] Job {job_id} error: {outcome}")
                    errors.append({"job_id": job_id, "error": str(outcome)})
                elif outcome.status == "done":
                    done.append(job_id)
                else:
                    failed.append(job_id)

        logger.info(
            f"[live_tracker] Cycle complete: {len(started)} jobs started, {len(done)} done, "
            f"{len(failed)} failed, {len(skipped)} skipped"
        )
        return {
            "campaigns": len(campaign_ids),
            "jobs_started": started,
            "jobs_done": done,
            "jobs_failed": failed,
            "skipped": skipped,
            "errors": errors,
        }

    async def run_watchdog(self, *, dry_run: bool = False) -> dict[str, Any] | None:
        from campaign_tracker.services.recovery import reconcile_interrupted_jobs

        settings = get_settings()
        session_factory = self._get_session_factory()
        # reconcile commits, so the lock lives on its own connection
        async with session_factory() as lock_session:
            if not await self._try_advisory_lock(lock_session, LOCK_WATCHDOG):
                logger.debug("[watchdog] Advisory lock not acquired, skipping tick")
                return None
            try:
                async with session_factory() as session:
                    return await reconcile_interrupted_jobs(
                        session, timedelta(minutes=settings.stuck_job_minutes), dry_run=dry_run
                    )
            finally:
                await self._release_advisory_lock(lock_session, LOCK_WATCHDOG)


def get_instance() -> LiveTracker:
    return LiveTracker.get_instance()
