from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.db import get_session
from campaign_tracker.schemas import (
    CampaignCreate,
    CampaignRead,
    CampaignUpdate,
    CampaignWithStats,
    HistoryPoint,
    ShareEnable,
    ShareRead,
    WindowKey,
    WindowTotals,
)
from campaign_tracker.services import aggregation, campaigns as campaign_service
from campaign_tracker.services.post_registry import get_campaign, list_posts

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])

SessionDep = Depends(get_session)


def _with_stats(campaign, stats: dict) -> CampaignWithStats:
    return CampaignWithStats(**CampaignRead.model_validate(campaign).model_dump(), stats=stats)


@router.get("", response_model=list[CampaignWithStats])
async def list_campaigns(session: AsyncSession = SessionDep):
    rows = await campaign_service.list_campaigns_with_stats(session)
    return [_with_stats(row["campaign"], row["stats"]) for row in rows]


@router.post("", response_model=CampaignRead, status_code=status.HTTP_201_CREATED)
async def create_campaign(data: CampaignCreate, session: AsyncSession = SessionDep):
    return await campaign_service.create_campaign(
        session, name=data.name, song_title=data.song_title, song_artist=data.song_artist, status=data.status
    )


@router.get("/{campaign_id}", response_model=CampaignWithStats)
async def get_campaign_detail(campaign_id: int, session: AsyncSession = SessionDep):
    campaign = await get_campaign(session, campaign_id)
    posts = await list_posts(session, campaign_id)
    return _with_stats(campaign, aggregation.campaign_stats(posts))


@router.patch("/{campaign_id}", response_model=CampaignRead)
async def update_campaign(campaign_id: int, data: CampaignUpdate, session: AsyncSession = SessionDep):
    return await campaign_service.update_campaign(session, campaign_id, **data.model_dump(exclude_unset=True))


@router.delete("/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_campaign(campaign_id: int, session: AsyncSession = SessionDep):
    await campaign_service.delete_campaign(session, campaign_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{campaign_id}/engagement-history")
async def engagement_history(
    campaign_id: int,
    window: WindowKey = Query(default="90d"),
    metric: str | None = Query(default=None),
    latest_only: bool = Query(default=False),
    session: AsyncSession = SessionDep,
):
    """Daily series for charts. With `metric`, a [{date, value}] list; otherwise all metrics per day."""
    series = await campaign_service.engagement_history(
        session, campaign_id, window=window, metric=metric, latest_only=latest_only
    )
    if metric:
        return [HistoryPoint(**point) for point in series]
    return series


@router.get("/{campaign_id}/engagement-windows", response_model=list[WindowTotals])
async def engagement_windows(campaign_id: int, session: AsyncSession = SessionDep):
    await get_campaign(session, campaign_id)
    posts = await list_posts(session, campaign_id)
    return aggregation.window_totals(posts)


@router.post("/{campaign_id}/share", response_model=ShareRead)
async def enable_share(campaign_id: int, data: ShareEnable, session: AsyncSession = SessionDep):
    return await campaign_service.enable_share(session, campaign_id, data.password)


@router.delete("/{campaign_id}/share", response_model=ShareRead)
async def disable_share(campaign_id: int, session: AsyncSession = SessionDep):
    return await campaign_service.disable_share(session, campaign_id)
