"""
Operations endpoints: watchdog and health.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.db import get_session

router = APIRouter(prefix="/api/ops", tags=["ops"])

SessionDep = Depends(get_session)


@router.post("/watchdog")
async def run_watchdog_endpoint(
    dry_run: bool = Query(default=True),
    session: AsyncSession = SessionDep,
):
    """Finalize scrape jobs that have made no progress for STUCK_JOB_MINUTES."""
    from campaign_tracker.services.recovery import run_watchdog
    return await run_watchdog(session, dry_run=dry_run)


@router.get("/health")
async def health_endpoint(session: AsyncSession = SessionDep):
    """Job/task/post counts, stuck jobs, live tracker and feature flags."""
    from campaign_tracker.services.recovery import get_health
    return await get_health(session)
