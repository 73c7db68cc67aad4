"""
Tests for recovery of interrupted scrape work.

Tests cover:
- Startup reconciliation of every active job
- Watchdog reconciliation of idle jobs only
- Dry runs
- Post scrape status restoration
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from campaign_tracker.models import Post, ScrapeTask, utcnow
from campaign_tracker.services import post_registry, scrape_jobs
from campaign_tracker.services.recovery import get_health, reconcile_interrupted_jobs, run_watchdog


async def _interrupted_job(session, campaign_id):
    """A job with one task mid-flight and one never started; both posts unmeasured except the first."""
    first = await post_registry.add_post(session, campaign_id, "https://tiktok.com/@ana/video/1")
    second = await post_registry.add_post(session, campaign_id, "https://tiktok.com/@ana/video/2")
    await post_registry.update_post(session, first.id, metrics={"views": 10})
    job = await scrape_jobs.start_job(session, campaign_id)
    tasks = await scrape_jobs.get_tasks(session, job.id)
    await session.execute(
        update(ScrapeTask).where(ScrapeTask.id == tasks[0].id).values(status="running", attempts=1)
    )
    await session.execute(update(Post).values(scrape_status="scraping"))
    await session.commit()
    await scrape_jobs.refresh_job_status(session, job.id)
    return job, first, second


class TestStartupReconciliation:

    @pytest.mark.asyncio
    async def test_all_active_jobs_are_failed(self, session, session_factory, campaign):
        job, first, second = await _interrupted_job(session, campaign.id)

        async with session_factory() as s:
            report = await reconcile_interrupted_jobs(s)

        assert report["jobs_reconciled"] == 1
        assert report["tasks_failed"] == 2
        assert report["posts_restored"] == 2
        assert report["items"][0]["new_status"] == "failed"
        assert report["older_than_minutes"] is None

        async with session_factory() as s:
            tasks = await scrape_jobs.get_tasks(s, job.id)
            assert {t.status for t in tasks} == {"failed"}
            assert all(t.last_error.startswith("interrupted") for t in tasks)
            assert (await s.get(Post, first.id)).scrape_status == "scraped"
            assert (await s.get(Post, second.id)).scrape_status == "pending"

    @pytest.mark.asyncio
    async def test_campaign_can_be_refreshed_after_recovery(self, session, session_factory, campaign):
        await _interrupted_job(session, campaign.id)
        async with session_factory() as s:
            await reconcile_interrupted_jobs(s)
        async with session_factory() as s:
            job = await scrape_jobs.start_job(s, campaign.id)
        assert job.status == "queued"

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, session, session_factory, campaign):
        job, _, _ = await _interrupted_job(session, campaign.id)
        async with session_factory() as s:
            report = await reconcile_interrupted_jobs(s, dry_run=True)
        assert report["jobs_reconciled"] == 1
        assert report["items"][0]["action"] == "would_fail"

        async with session_factory() as s:
            assert (await scrape_jobs.get_job(s, job.id)).status == "running"

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, session_factory):
        async with session_factory() as s:
            report = await reconcile_interrupted_jobs(s)
        assert report["jobs_reconciled"] == 0
        assert report["items"] == []


class TestWatchdog:

    @pytest.mark.asyncio
    async def test_active_jobs_are_left_alone(self, session, session_factory, campaign):
        job, _, _ = await _interrupted_job(session, campaign.id)
        async with session_factory() as s:
            report = await run_watchdog(s)
        assert report["jobs_reconciled"] == 0
        async with session_factory() as s:
            assert (await scrape_jobs.get_job(s, job.id)).status == "running"

    @pytest.mark.asyncio
    async def test_idle_jobs_are_failed(self, session, session_factory, campaign):
        job, first, _ = await _interrupted_job(session, campaign.id)
        later = utcnow() + timedelta(hours=3)
        async with session_factory() as s:
            report = await reconcile_interrupted_jobs(s, timedelta(minutes=60), now=later)
        assert report["jobs_reconciled"] == 1
        assert report["older_than_minutes"] == 60
        assert report["items"][0]["idle_minutes"] >= 179
        async with session_factory() as s:
            assert (await scrape_jobs.get_job(s, job.id)).status == "failed"
            assert (await s.get(Post, first.id)).scrape_status == "scraped"


class TestHealth:

    @pytest.mark.asyncio
    async def test_counts(self, session, session_factory, campaign):
        await _interrupted_job(session, campaign.id)
        async with session_factory() as s:
            health = await get_health(s)
        assert health["jobs"]["running"] == 1
        assert health["jobs"]["done"] == 0
        assert health["tasks"]["running"] == 1
        assert health["tasks"]["queued"] == 1
        assert health["stuck_jobs"] == 0
        assert health["celery_enabled"] is False
        assert "is_scheduled" in health["live_tracker"]
