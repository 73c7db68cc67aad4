"""
Public read-only campaign view behind a share link and password.

The password travels in the request body on every call; nothing is cached
or remembered between requests.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.db import get_session
from campaign_tracker.schemas import PostRead, SharedAccess, SharedCampaignRead
from campaign_tracker.services import campaigns as campaign_service
from campaign_tracker.services.post_registry import is_placeholder

router = APIRouter(prefix="/api/shared", tags=["shared"])

SessionDep = Depends(get_session)


@router.post("/{slug}", response_model=SharedCampaignRead)
async def view_shared_campaign(slug: str, data: SharedAccess, session: AsyncSession = SessionDep):
    campaign = await campaign_service.open_shared_campaign(session, slug, data.password)
    report = await campaign_service.campaign_report(session, campaign)
    return SharedCampaignRead(
        name=campaign.name,
        song_title=campaign.song_title,
        song_artist=campaign.song_artist,
        stats=report["stats"],
        status_counts=report["status_counts"],
        windows=report["windows"],
        history=report["history"],
        posts=[PostRead.model_validate(p) for p in report["posts"] if not is_placeholder(p)],
    )
