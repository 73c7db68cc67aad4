"""
Post registry: normalizes, deduplicates and stores tracked posts.

Duplicate policy: adding a URL whose post key (``platform:canonical_url``)
already exists in the campaign raises DuplicateResourceError. The unique
constraint (campaign_id, post_key) backs the pre-check under concurrency.

Placeholder posts (creator imported without a link) carry a synthetic
``placeholder://`` URL and are never scheduled for scraping.
"""
from __future__ import annotations

import csv
import io
import logging
import zipfile
from collections.abc import Iterable
from enum import Enum
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.errors import DuplicateResourceError, NotFoundError, ValidationError
from campaign_tracker.models import (
    Campaign,
    Platform,
    Post,
    ScrapeStatus,
    ScrapeTask,
    WorkflowStatus,
    utcnow,
)
from campaign_tracker.services import history
from campaign_tracker.services.aggregation import canonical_status, parse_timestamp, record_value
from campaign_tracker.services.urls import (
    canonicalize,
    coerce_platform,
    extract_post_id,
    is_placeholder_url,
    make_post_key,
    placeholder_url,
)

logger = logging.getLogger(__name__)

MANUAL_METRIC_FIELDS = ("views", "likes", "comments", "shares")


# ── Predicates ───────────────────────────────────────────────

def _has_platform(post: Any) -> bool:
    platform = record_value(post, "platform")
    if isinstance(platform, Platform):
        return platform is not Platform.unknown
    return bool(platform) and str(platform).strip().lower() != Platform.unknown.value


def is_placeholder(post: Any) -> bool:
    """Synthetic URL, no platform, or pending with all four metrics at zero."""
    url = record_value(post, "url") or record_value(post, "post_link") or ""
    if is_placeholder_url(url):
        return True
    if not _has_platform(post):
        return True
    status = record_value(post, "workflow_status") or record_value(post, "post_status")
    metrics_sum = sum(int(record_value(post, key) or 0) for key in MANUAL_METRIC_FIELDS)
    if isinstance(status, Enum):
        status = status.value
    # literal "pending" only; unrecognized labels are not placeholders
    return status is not None and str(status).strip().lower() == "pending" and metrics_sum == 0


def is_schedulable(post: Any) -> bool:
    """Eligible for scrape tasks: has a real URL on a known platform."""
    url = record_value(post, "url") or ""
    return bool(url) and not is_placeholder_url(url) and _has_platform(post)


def is_scraped(post: Any) -> bool:
    """Explicit scraped flag, or a parseable last-successful-scrape timestamp."""
    if record_value(post, "is_scraped") is True:
        return True
    if record_value(post, "scrape_status") == ScrapeStatus.scraped.value:
        return True
    for key in ("last_scraped_at", "scraped_at"):
        value = record_value(post, key)
        if value is not None:
            return parse_timestamp(value) is not None
    return False


def dedupe_key(post: Any) -> str:
    for label, key in (
        ("id", "external_post_id"),
        ("id", "post_id"),
        ("key", "post_key"),
        ("url", "url"),
        ("url", "post_link"),
    ):
        value = record_value(post, key)
        if value not in (None, ""):
            return f"{label}:{value}"
    platform = record_value(post, "platform") or ""
    creator = record_value(post, "creator_name") or ""
    return f"creator:{platform}:{creator}"


def dedupe(posts: Iterable[Any]) -> list[Any]:
    """Collapse entries sharing a dedupe key to the first occurrence, in order."""
    seen: set[str] = set()
    unique = []
    for post in posts:
        key = dedupe_key(post)
        if key not in seen:
            seen.add(key)
            unique.append(post)
    return unique


# ── Reads ────────────────────────────────────────────────────

async def get_campaign(session: AsyncSession, campaign_id: int) -> Campaign:
    campaign = await session.get(Campaign, campaign_id)
    if not campaign:
        raise NotFoundError("Campaign", campaign_id)
    return campaign


async def get_post(session: AsyncSession, post_id: int) -> Post:
    post = await session.get(Post, post_id)
    if not post:
        raise NotFoundError("Post", post_id)
    return post


async def list_posts(session: AsyncSession, campaign_id: int) -> list[Post]:
    result = await session.execute(
        select(Post).where(Post.campaign_id == campaign_id).order_by(Post.created_at.desc(), Post.id.desc())
    )
    return list(result.scalars().all())


async def _find_by_key(session: AsyncSession, campaign_id: int, post_key: str) -> Post | None:
    result = await session.execute(
        select(Post).where(Post.campaign_id == campaign_id, Post.post_key == post_key).limit(1)
    )
    return result.scalar_one_or_none()


async def find_duplicate_keys(session: AsyncSession, campaign_id: int) -> list[dict]:
    """Post keys held by more than one row (rows written before the constraint existed)."""
    dup_q = await session.execute(
        select(Post.post_key, func.count(Post.id))
        .where(Post.campaign_id == campaign_id)
        .group_by(Post.post_key)
        .having(func.count(Post.id) > 1)
    )
    duplicates = []
    for post_key, count in dup_q.all():
        ids_q = await session.execute(
            select(Post.id).where(Post.campaign_id == campaign_id, Post.post_key == post_key).order_by(Post.id)
        )
        duplicates.append({"post_key": post_key, "count": count, "post_ids": list(ids_q.scalars().all())})
    return duplicates


# ── Writes ───────────────────────────────────────────────────

def _workflow_value(value: WorkflowStatus | str | None) -> str:
    if value is None:
        return WorkflowStatus.pending.value
    return WorkflowStatus[canonical_status(value).name].value


async def _commit_new_post(session: AsyncSession, post: Post) -> Post:
    campaign_id, post_key = post.campaign_id, post.post_key
    session.add(post)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        existing = await _find_by_key(session, campaign_id, post_key)
        raise DuplicateResourceError(
            "Post", "post key", post_key, existing_id=existing.id if existing else None
        ) from exc
    await session.refresh(post)
    return post


async def add_post(
    session: AsyncSession,
    campaign_id: int,
    raw_url: str,
    platform_hint: Platform | str | None = None,
    creator_name: str | None = None,
    workflow_status: WorkflowStatus | str | None = None,
) -> Post:
    """Register a post URL in a campaign.

    Raises NotFoundError, ValidationError or DuplicateResourceError.
    """
    await get_campaign(session, campaign_id)
    if is_placeholder_url((raw_url or "").strip()):
        return await add_placeholder_post(session, campaign_id, creator_name=creator_name, platform_hint=platform_hint)

    platform, canonical_url = canonicalize(raw_url, platform_hint)
    post_key = make_post_key(platform, canonical_url)

    existing = await _find_by_key(session, campaign_id, post_key)
    if existing:
        raise DuplicateResourceError("Post", "post key", post_key, existing_id=existing.id)

    post = Post(
        campaign_id=campaign_id,
        url=raw_url.strip(),
        canonical_url=canonical_url,
        post_key=post_key,
        platform=platform.value,
        external_post_id=extract_post_id(raw_url.strip(), platform),
        creator_name=(creator_name or "").strip() or None,
        workflow_status=_workflow_value(workflow_status),
        scrape_status=ScrapeStatus.pending.value,
    )
    post = await _commit_new_post(session, post)
    logger.info(f"[post_registry] Added post {post.id} ({post_key}) to campaign {campaign_id}")
    return post


async def add_placeholder_post(
    session: AsyncSession,
    campaign_id: int,
    creator_name: str | None = None,
    platform_hint: Platform | str | None = None,
) -> Post:
    await get_campaign(session, campaign_id)
    url = placeholder_url()
    platform = coerce_platform(platform_hint) or Platform.unknown
    post = Post(
        campaign_id=campaign_id,
        url=url,
        canonical_url=url,
        post_key=make_post_key(platform, url),
        platform=platform.value,
        creator_name=(creator_name or "").strip() or None,
        workflow_status=WorkflowStatus.pending.value,
        scrape_status=ScrapeStatus.pending.value,
    )
    post = await _commit_new_post(session, post)
    logger.info(f"[post_registry] Added placeholder post {post.id} for creator {post.creator_name!r}")
    return post


async def update_post(
    session: AsyncSession,
    post_id: int,
    *,
    workflow_status: WorkflowStatus | str | None = None,
    creator_name: str | None = None,
    metrics: dict[str, int] | None = None,
    url: str | None = None,
) -> Post:
    """Manual edits. Manual metrics become the latest measurement and are ledgered."""
    post = await get_post(session, post_id)

    if url is not None and url.strip() != post.url:
        platform, canonical_url = canonicalize(url, post.platform if post.platform != Platform.unknown.value else None)
        post_key = make_post_key(platform, canonical_url)
        existing = await _find_by_key(session, post.campaign_id, post_key)
        if existing and existing.id != post.id:
            raise DuplicateResourceError("Post", "post key", post_key, existing_id=existing.id)
        post.url = url.strip()
        post.canonical_url = canonical_url
        post.post_key = post_key
        post.platform = platform.value
        post.external_post_id = extract_post_id(post.url, platform)
        if post.scrape_status == ScrapeStatus.error.value:
            post.scrape_status = ScrapeStatus.pending.value
            post.error_message = None

    if workflow_status is not None:
        post.workflow_status = _workflow_value(workflow_status)
    if creator_name is not None:
        post.creator_name = creator_name.strip() or None

    if metrics:
        unknown = set(metrics) - set(MANUAL_METRIC_FIELDS)
        if unknown:
            raise ValidationError(f"unknown metrics: {', '.join(sorted(unknown))}", field="metrics")
        for key, value in metrics.items():
            if value is None:
                continue
            if value < 0:
                raise ValidationError("metrics must be non-negative", field=key)
            setattr(post, key, value)
        now = utcnow()
        post.last_scraped_at = now
        history.append_snapshot(
            session, post.id,
            views=post.views, likes=post.likes, comments=post.comments, shares=post.shares,
            recorded_at=now, source="manual",
        )

    session.add(post)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateResourceError("Post", "post key", post.post_key) from exc
    await session.refresh(post)
    return post


async def delete_post(session: AsyncSession, post_id: int) -> None:
    post = await get_post(session, post_id)
    job_ids_q = await session.execute(select(ScrapeTask.job_id).where(ScrapeTask.post_id == post_id).distinct())
    job_ids = list(job_ids_q.scalars().all())

    await history.delete_post_history(session, [post_id])
    await session.execute(delete(ScrapeTask).where(ScrapeTask.post_id == post_id))
    await session.delete(post)
    await session.commit()

    if job_ids:
        from campaign_tracker.services.scrape_jobs import refresh_job_status

        for job_id in job_ids:
            await refresh_job_status(session, job_id)
    logger.info(f"[post_registry] Deleted post {post_id}")


# ── Bulk import ──────────────────────────────────────────────

_HEADER_ALIASES = {
    "url": "url",
    "post_url": "url",
    "post_link": "url",
    "link": "url",
    "creator": "creator_name",
    "creator_name": "creator_name",
    "name": "creator_name",
    "handle": "creator_name",
    "platform": "platform",
    "status": "workflow_status",
    "post_status": "workflow_status",
    "workflow_status": "workflow_status",
}


def _normalize_header(value: Any) -> str | None:
    if value is None:
        return None
    key = str(value).strip().lower().replace(" ", "_").replace("-", "_")
    return _HEADER_ALIASES.get(key)


def _rows_from_table(table: list[list[Any]]) -> list[dict[str, str]]:
    if not table:
        raise ValidationError("Empty file", field="file")
    header = [_normalize_header(h) for h in table[0]]
    if "url" not in header and "creator_name" not in header:
        raise ValidationError("expected a url or creator column", field="file")
    rows = []
    for raw in table[1:]:
        row: dict[str, str] = {}
        for idx, name in enumerate(header):
            if name and idx < len(raw) and raw[idx] not in (None, ""):
                row[name] = str(raw[idx]).strip()
        if row:
            rows.append(row)
    return rows


def parse_import_file(filename: str, content: bytes) -> list[dict[str, str]]:
    """Read .csv or .xlsx creator/post sheets into row dicts."""
    if (filename or "").lower().endswith(".xlsx"):
        from openpyxl import load_workbook
        from openpyxl.utils.exceptions import InvalidFileException

        try:
            wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
            raise ValidationError(f"unreadable xlsx file: {exc}", field="file") from exc
        table = [list(row) for row in wb.active.iter_rows(values_only=True)]
        wb.close()
        return _rows_from_table(table)

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("CSV must be UTF-8 encoded", field="file") from exc
    table = [row for row in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in row)]
    return _rows_from_table(table)


async def import_posts(session: AsyncSession, campaign_id: int, rows: list[dict[str, str]]) -> dict[str, Any]:
    """Create posts from imported rows. Rows without a URL become placeholders."""
    await get_campaign(session, campaign_id)
    unique_rows = dedupe(rows)
    created: list[int] = []
    skipped = len(rows) - len(unique_rows)
    errors: list[dict[str, Any]] = []

    for idx, row in enumerate(unique_rows):
        url = row.get("url")
        try:
            if url:
                post = await add_post(
                    session, campaign_id, url,
                    platform_hint=row.get("platform"),
                    creator_name=row.get("creator_name"),
                    workflow_status=row.get("workflow_status"),
                )
            elif row.get("creator_name"):
                post = await add_placeholder_post(
                    session, campaign_id,
                    creator_name=row.get("creator_name"),
                    platform_hint=row.get("platform"),
                )
            else:
                errors.append({"row": idx, "error": "row has neither url nor creator"})
                continue
            created.append(post.id)
        except DuplicateResourceError:
            skipped += 1
        except ValidationError as exc:
            errors.append({"row": idx, "error": exc.message})

    logger.info(
        f"[post_registry] Import into campaign {campaign_id}: "
        f"{len(created)} created, {skipped} skipped, {len(errors)} errors"
    )
    return {"created": len(created), "skipped": skipped, "errors": len(errors), "post_ids": created, "error_details": errors}
