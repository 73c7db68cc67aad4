from __future__ import annotations

from fastapi import APIRouter, Depends, File, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_tracker.db import get_session
from campaign_tracker.errors import ValidationError
from campaign_tracker.schemas import DuplicateKey, ImportResult, PostCreate, PostRead, PostUpdate, SnapshotRead
from campaign_tracker.services import history, post_registry

router = APIRouter(prefix="/api", tags=["posts"])

SessionDep = Depends(get_session)

MAX_IMPORT_BYTES = 5 * 1024 * 1024


@router.get("/campaigns/{campaign_id}/posts", response_model=list[PostRead])
async def list_posts(campaign_id: int, session: AsyncSession = SessionDep):
    await post_registry.get_campaign(session, campaign_id)
    return await post_registry.list_posts(session, campaign_id)


@router.post("/campaigns/{campaign_id}/posts", response_model=PostRead, status_code=status.HTTP_201_CREATED)
async def add_post(campaign_id: int, data: PostCreate, session: AsyncSession = SessionDep):
    """Add a post by URL; without a URL a placeholder is created for the creator."""
    if not (data.url or "").strip():
        return await post_registry.add_placeholder_post(
            session, campaign_id, creator_name=data.creator_name, platform_hint=data.platform
        )
    return await post_registry.add_post(
        session,
        campaign_id,
        data.url,
        platform_hint=data.platform,
        creator_name=data.creator_name,
        workflow_status=data.workflow_status,
    )


@router.post("/campaigns/{campaign_id}/posts/import", response_model=ImportResult)
async def import_posts(campaign_id: int, file: UploadFile = File(...), session: AsyncSession = SessionDep):
    """Import a CSV or XLSX sheet with url / creator / platform columns."""
    await post_registry.get_campaign(session, campaign_id)
    content = await file.read(MAX_IMPORT_BYTES + 1)
    if len(content) > MAX_IMPORT_BYTES:
        raise ValidationError("file too large (max 5 MB)", field="file")
    rows = post_registry.parse_import_file(file.filename or "", content)
    return await post_registry.import_posts(session, campaign_id, rows)


@router.get("/campaigns/{campaign_id}/posts/duplicates", response_model=list[DuplicateKey])
async def list_duplicate_posts(campaign_id: int, session: AsyncSession = SessionDep):
    await post_registry.get_campaign(session, campaign_id)
    return await post_registry.find_duplicate_keys(session, campaign_id)


@router.patch("/posts/{post_id}", response_model=PostRead)
async def update_post(post_id: int, data: PostUpdate, session: AsyncSession = SessionDep):
    metrics = data.metrics.model_dump(exclude_none=True) if data.metrics else None
    return await post_registry.update_post(
        session,
        post_id,
        workflow_status=data.workflow_status,
        creator_name=data.creator_name,
        metrics=metrics,
        url=data.url,
    )


@router.delete("/posts/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(post_id: int, session: AsyncSession = SessionDep):
    await post_registry.delete_post(session, post_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/posts/{post_id}/history", response_model=list[SnapshotRead])
async def post_history(post_id: int, session: AsyncSession = SessionDep):
    await post_registry.get_post(session, post_id)
    return await history.list_post_history(session, post_id)
