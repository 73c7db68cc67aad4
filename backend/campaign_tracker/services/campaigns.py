"""
Campaign CRUD, reporting and password-protected sharing.

Reports are recomputed from posts and the history ledger on every call.
Share passwords are stored as salted PBKDF2-SHA256 hashes and re-verified on
every shared access.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.errors import AccessDeniedError, NotFoundError, ValidationError
from campaign_tracker.models import Campaign, Post, ScrapeJob, ScrapeTask, utcnow
from campaign_tracker.services import aggregation, history
from campaign_tracker.services.post_registry import get_campaign, is_placeholder, list_posts

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000
MIN_SHARE_PASSWORD_LENGTH = 4


# ── CRUD ─────────────────────────────────────────────────────

async def create_campaign(
    session: AsyncSession, *, name: str, song_title: str, song_artist: str | None = None, status: str = "Active"
) -> Campaign:
    if not (name or "").strip():
        raise ValidationError("name is required", field="name")
    if not (song_title or "").strip():
        raise ValidationError("song title is required", field="song_title")
    campaign = Campaign(
        name=name.strip(),
        song_title=song_title.strip(),
        song_artist=(song_artist or "").strip() or None,
        status=status or "Active",
    )
    session.add(campaign)
    await session.commit()
    await session.refresh(campaign)
    logger.info(f"[campaigns] Created campaign {campaign.id} ({campaign.name!r})")
    return campaign


async def update_campaign(session: AsyncSession, campaign_id: int, **fields: Any) -> Campaign:
    campaign = await get_campaign(session, campaign_id)
    for key in ("name", "song_title", "song_artist", "status"):
        value = fields.get(key)
        if value is None:
            continue
        if key in ("name", "song_title") and not str(value).strip():
            raise ValidationError(f"{key} must not be empty", field=key)
        setattr(campaign, key, str(value).strip())
    session.add(campaign)
    await session.commit()
    await session.refresh(campaign)
    return campaign


async def delete_campaign(session: AsyncSession, campaign_id: int) -> None:
    """Delete a campaign with its posts, jobs, tasks and history."""
    await get_campaign(session, campaign_id)
    post_ids = list((await session.execute(select(Post.id).where(Post.campaign_id == campaign_id))).scalars().all())
    job_ids = select(ScrapeJob.id).where(ScrapeJob.campaign_id == campaign_id)

    await history.delete_post_history(session, post_ids)
    await session.execute(delete(ScrapeTask).where(ScrapeTask.job_id.in_(job_ids)))
    await session.execute(delete(ScrapeJob).where(ScrapeJob.campaign_id == campaign_id))
    await session.execute(delete(Post).where(Post.campaign_id == campaign_id))
    await session.execute(delete(Campaign).where(Campaign.id == campaign_id))
    await session.commit()
    logger.info(f"[campaigns] Deleted campaign {campaign_id} ({len(post_ids)} posts)")


async def list_campaigns_with_stats(session: AsyncSession) -> list[dict[str, Any]]:
    campaigns = list((await session.execute(select(Campaign).order_by(Campaign.created_at.desc()))).scalars().all())
    posts = list((await session.execute(select(Post))).scalars().all())
    by_campaign: dict[int, list[Post]] = {}
    for post in posts:
        by_campaign.setdefault(post.campaign_id, []).append(post)
    return [
        {"campaign": campaign, "stats": aggregation.campaign_stats(by_campaign.get(campaign.id, []))}
        for campaign in campaigns
    ]


# ── Reports ──────────────────────────────────────────────────

async def engagement_history(
    session: AsyncSession,
    campaign_id: int,
    *,
    window: str = "90d",
    metric: str | None = None,
    latest_only: bool = False,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Daily series over the window: one metric, or all of them when metric is None.

    Each day sums every snapshot recorded that UTC day. With latest_only, each
    post contributes only its last reading of the day.
    """
    await get_campaign(session, campaign_id)
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(hours=aggregation.window_hours(window))
    snapshots = await history.list_campaign_history(session, campaign_id, since=since)
    points = aggregation.latest_per_day(snapshots) if latest_only else snapshots
    if metric:
        return aggregation.group_by_day(points, metric, window, now)
    return aggregation.daily_series(points, window, now)


async def campaign_report(session: AsyncSession, campaign: Campaign, *, now: datetime | None = None) -> dict[str, Any]:
    """Everything a dashboard (or the shared view) shows for one campaign."""
    now = now or datetime.now(timezone.utc)
    posts = await list_posts(session, campaign.id)
    real_posts = [p for p in posts if not is_placeholder(p)]
    status_counts: dict[str, int] = {status.value: 0 for status in aggregation.CanonicalStatus}
    for post in posts:
        status_counts[aggregation.canonical_status(post.workflow_status).value] += 1
    return {
        "campaign": campaign,
        "stats": aggregation.campaign_stats(posts),
        "tracked_posts": len(real_posts),
        "status_counts": status_counts,
        "windows": aggregation.window_totals(posts, now),
        "history": await engagement_history(session, campaign.id, window="90d", now=now),
        "posts": posts,
    }


# ── Sharing ──────────────────────────────────────────────────

def hash_share_password(password: str, *, salt: str | None = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations).hex()
    return f"pbkdf2_sha256${iterations}${salt}${digest}"


def verify_share_password(password: str, stored: str | None) -> bool:
    if not stored or password is None:
        return False
    try:
        algorithm, iterations, salt, digest = stored.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    candidate = hash_share_password(password, salt=salt, iterations=rounds).rsplit("$", 1)[1]
    return secrets.compare_digest(candidate, digest)


async def enable_share(session: AsyncSession, campaign_id: int, password: str) -> Campaign:
    if not password or len(password) < MIN_SHARE_PASSWORD_LENGTH:
        raise ValidationError(
            f"share password must be at least {MIN_SHARE_PASSWORD_LENGTH} characters", field="password"
        )
    campaign = await get_campaign(session, campaign_id)
    if not campaign.share_slug:
        campaign.share_slug = secrets.token_urlsafe(9)
    campaign.share_password_hash = hash_share_password(password)
    campaign.share_enabled = True
    campaign.share_created_at = utcnow()
    session.add(campaign)
    await session.commit()
    await session.refresh(campaign)
    logger.info(f"[campaigns] Sharing enabled for campaign {campaign_id}")
    return campaign


async def disable_share(session: AsyncSession, campaign_id: int) -> Campaign:
    campaign = await get_campaign(session, campaign_id)
    campaign.share_enabled = False
    campaign.share_password_hash = None
    session.add(campaign)
    await session.commit()
    await session.refresh(campaign)
    logger.info(f"[campaigns] Sharing disabled for campaign {campaign_id}")
    return campaign


async def open_shared_campaign(session: AsyncSession, slug: str, password: str) -> Campaign:
    """Resolve a share slug; the password is checked on every access."""
    result = await session.execute(select(Campaign).where(Campaign.share_slug == slug))
    campaign = result.scalar_one_or_none()
    if campaign is None or not campaign.share_enabled:
        raise NotFoundError("Shared campaign", slug)
    if not verify_share_password(password, campaign.share_password_hash):
        logger.info(f"[campaigns] Rejected shared access to campaign {campaign.id}")
        raise AccessDeniedError("Invalid password")
    return campaign
