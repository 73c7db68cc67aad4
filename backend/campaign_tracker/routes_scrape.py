"""
Scrape job endpoints: start refreshes and poll their progress.

Starting a job returns immediately with the queued job; execution happens in
Celery or a background task (see services.scrape_jobs.dispatch_job).
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.db import get_session
from campaign_tracker.schemas import RescrapeRequest, ScrapeJobRead, ScrapeTaskRead
from campaign_tracker.services import scrape_jobs
from campaign_tracker.services.post_registry import get_campaign, get_post

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["scrape"])

SessionDep = Depends(get_session)


async def _start_and_dispatch(session: AsyncSession, campaign_id: int, post_ids: list[int] | None) -> dict:
    job = await scrape_jobs.start_job(session, campaign_id, post_ids)
    scrape_jobs.dispatch_job(job.id)
    return await scrape_jobs.get_job_with_stats(session, job.id)


@router.post("/posts/{post_id}/rescrape", response_model=ScrapeJobRead, status_code=status.HTTP_202_ACCEPTED)
async def rescrape_post(post_id: int, session: AsyncSession = SessionDep):
    post = await get_post(session, post_id)
    return await _start_and_dispatch(session, post.campaign_id, [post.id])


@router.post(
    "/campaigns/{campaign_id}/rescrape-all", response_model=ScrapeJobRead, status_code=status.HTTP_202_ACCEPTED
)
async def rescrape_campaign(
    campaign_id: int,
    data: RescrapeRequest | None = Body(default=None),
    session: AsyncSession = SessionDep,
):
    return await _start_and_dispatch(session, campaign_id, data.post_ids if data else None)


@router.get("/campaigns/{campaign_id}/scrape-jobs/active", response_model=ScrapeJobRead | None)
async def get_active_job(campaign_id: int, session: AsyncSession = SessionDep):
    await get_campaign(session, campaign_id)
    job = await scrape_jobs.get_active_job(session, campaign_id)
    if job is None:
        return None
    return await scrape_jobs.get_job_with_stats(session, job.id)


@router.get("/scrape-jobs/{job_id}", response_model=ScrapeJobRead)
async def get_job(job_id: int, session: AsyncSession = SessionDep):
    return await scrape_jobs.get_job_with_stats(session, job_id)


@router.get("/scrape-jobs/{job_id}/tasks", response_model=list[ScrapeTaskRead])
async def get_job_tasks(job_id: int, session: AsyncSession = SessionDep):
    return await scrape_jobs.get_tasks(session, job_id)
