from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .models import Platform, WorkflowStatus

WindowKey = Literal["24h", "72h", "7d", "30d", "60d", "90d"]


class CampaignBase(BaseModel):
    name: str
    song_title: str
    song_artist: str | None = None
    status: str = "Active"

    @field_validator("name", "song_title")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class CampaignCreate(CampaignBase):
    pass


class CampaignUpdate(BaseModel):
    name: str | None = None
    song_title: str | None = None
    song_artist: str | None = None
    status: str | None = None


class CampaignRead(CampaignBase):
    id: int
    share_enabled: bool = False
    share_slug: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class CampaignStats(BaseModel):
    total_views: int = 0
    total_likes: int = 0
    total_comments: int = 0
    total_shares: int = 0
    total_engagement: int = 0
    post_count: int = 0


class CampaignWithStats(CampaignRead):
    stats: CampaignStats


class PostCreate(BaseModel):
    url: str | None = None
    platform: Platform | None = None
    creator_name: str | None = None
    workflow_status: WorkflowStatus | None = None


class PostMetrics(BaseModel):
    views: int | None = Field(default=None, ge=0)
    likes: int | None = Field(default=None, ge=0)
    comments: int | None = Field(default=None, ge=0)
    shares: int | None = Field(default=None, ge=0)


class PostUpdate(BaseModel):
    url: str | None = None
    creator_name: str | None = None
    workflow_status: WorkflowStatus | None = None
    metrics: PostMetrics | None = None


class PostRead(BaseModel):
    id: int
    campaign_id: int
    url: str
    canonical_url: str
    post_key: str
    platform: str
    external_post_id: str | None = None
    creator_name: str | None = None
    workflow_status: str
    views: int
    likes: int
    comments: int
    shares: int
    engagement_rate: float
    scrape_status: str
    last_scraped_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class DuplicateKey(BaseModel):
    post_key: str
    count: int
    post_ids: list[int]


class ImportResult(BaseModel):
    created: int
    skipped: int
    errors: int
    post_ids: list[int] = []
    error_details: list[dict] = []


class ScrapeJobRead(BaseModel):
    id: int
    campaign_id: int
    status: str
    trigger: str
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_tasks: int = 0
    completed_tasks: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    queued_tasks: int = 0
    running_tasks: int = 0


class ScrapeTaskRead(BaseModel):
    id: int
    job_id: int
    post_id: int
    url: str
    platform: str
    status: str
    attempts: int
    last_error: str | None = None
    result_views: int | None = None
    result_likes: int | None = None
    result_comments: int | None = None
    result_shares: int | None = None
    next_attempt_at: datetime | None = None
    updated_at: datetime

    class Config:
        from_attributes = True


class RescrapeRequest(BaseModel):
    post_ids: list[int] | None = None


class SnapshotRead(BaseModel):
    id: int
    post_id: int
    views: int
    likes: int
    comments: int
    shares: int
    total_engagement: int
    source: str
    recorded_at: datetime

    class Config:
        from_attributes = True


class HistoryPoint(BaseModel):
    date: str
    value: int


class WindowTotals(BaseModel):
    key: str
    label: str
    hours: int
    totals: dict[str, int]


class ShareEnable(BaseModel):
    password: str = Field(min_length=4)


class ShareRead(BaseModel):
    share_enabled: bool
    share_slug: str | None = None
    share_created_at: datetime | None = None

    class Config:
        from_attributes = True


class SharedAccess(BaseModel):
    password: str


class SharedCampaignRead(BaseModel):
    """Read-only public view; no share settings or internal ids beyond posts."""

    name: str
    song_title: str
    song_artist: str | None = None
    stats: CampaignStats
    status_counts: dict[str, int]
    windows: list[WindowTotals]
    history: list[dict]
    posts: list[PostRead]
