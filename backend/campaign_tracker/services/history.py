"""
Engagement history ledger.

Append-only: one EngagementSnapshot per successful measurement (scrape or
manual metrics edit). Rows are never updated; they go away only with their
post or campaign.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.models import EngagementSnapshot, Post, utcnow

logger = logging.getLogger(__name__)


def append_snapshot(
    session: AsyncSession,
    post_id: int,
    *,
    views: int,
    likes: int,
    comments: int,
    shares: int,
    recorded_at: datetime | None = None,
    source: str = "scrape",
) -> EngagementSnapshot:
    """Stage a snapshot row on the session; the caller commits."""
    snapshot = EngagementSnapshot(
        post_id=post_id,
        views=views or 0,
        likes=likes or 0,
        comments=comments or 0,
        shares=shares or 0,
        total_engagement=(likes or 0) + (comments or 0) + (shares or 0),
        source=source,
        recorded_at=recorded_at or utcnow(),
    )
    session.add(snapshot)
    return snapshot


async def list_post_history(session: AsyncSession, post_id: int) -> list[EngagementSnapshot]:
    result = await session.execute(
        select(EngagementSnapshot)
        .where(EngagementSnapshot.post_id == post_id)
        .order_by(EngagementSnapshot.recorded_at.asc(), EngagementSnapshot.id.asc())
    )
    return list(result.scalars().all())


async def list_campaign_history(
    session: AsyncSession,
    campaign_id: int,
    *,
    since: datetime | None = None,
) -> list[EngagementSnapshot]:
    query = (
        select(EngagementSnapshot)
        .join(Post, Post.id == EngagementSnapshot.post_id)
        .where(Post.campaign_id == campaign_id)
    )
    if since is not None:
        query = query.where(EngagementSnapshot.recorded_at >= since)
    result = await session.execute(
        query.order_by(EngagementSnapshot.recorded_at.asc(), EngagementSnapshot.id.asc())
    )
    return list(result.scalars().all())


async def delete_post_history(session: AsyncSession, post_ids: list[int]) -> int:
    """Remove history of posts being deleted. Not for use in normal operation."""
    if not post_ids:
        return 0
    result = await session.execute(
        delete(EngagementSnapshot).where(EngagementSnapshot.post_id.in_(post_ids))
    )
    logger.info(f"[history] Deleted {result.rowcount} snapshots for {len(post_ids)} posts")
    return result.rowcount or 0
