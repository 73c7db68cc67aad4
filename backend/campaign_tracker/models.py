from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship
from sqlalchemy.types import TypeDecorator

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way in; values read back are re-tagged as UTC.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Platform(str, Enum):
    tiktok = "tiktok"
    instagram = "instagram"
    youtube = "youtube"
    twitter = "twitter"
    facebook = "facebook"
    unknown = "unknown"


class WorkflowStatus(str, Enum):
    pending = "pending"
    briefed = "briefed"
    active = "active"
    done = "done"


class ScrapeStatus(str, Enum):
    pending = "pending"
    scraping = "scraping"
    scraped = "scraped"
    error = "error"


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    done = "done"
    failed = "failed"


class TaskStatus(str, Enum):
    queued = "queued"
    running = "running"
    success = "success"
    failed = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.queued.value, JobStatus.running.value)
TERMINAL_JOB_STATUSES = (JobStatus.done.value, JobStatus.failed.value)
TERMINAL_TASK_STATUSES = (TaskStatus.success.value, TaskStatus.failed.value)


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    song_title: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    song_artist: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="Active", default="Active")
    share_enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    share_slug: Mapped[str | None] = mapped_column(sa.String(64), unique=True, nullable=True)
    share_password_hash: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    share_created_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False
    )

    posts: Mapped[list["Post"]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan", passive_deletes=True
    )
    scrape_jobs: Mapped[list["ScrapeJob"]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan", passive_deletes=True
    )


class Post(Base):
    """A tracked social link. Metrics columns always hold the latest successful measurement."""

    __tablename__ = "posts"
    __table_args__ = (sa.UniqueConstraint("campaign_id", "post_key", name="uq_posts_campaign_post_key"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    canonical_url: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    post_key: Mapped[str] = mapped_column(sa.String(1024), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False, default=Platform.unknown.value)
    external_post_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    creator_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    workflow_status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=WorkflowStatus.pending.value, default=WorkflowStatus.pending.value
    )
    views: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    likes: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    comments: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    shares: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    engagement_rate: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default="0", default=0.0)
    scrape_status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=ScrapeStatus.pending.value, default=ScrapeStatus.pending.value
    )
    last_scraped_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False
    )

    campaign: Mapped[Campaign] = relationship(back_populates="posts")
    snapshots: Mapped[list["EngagementSnapshot"]] = relationship(
        back_populates="post", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def measured_at(self) -> datetime | None:
        return self.last_scraped_at


class ScrapeJob(Base):
    __tablename__ = "scrape_jobs"
    __table_args__ = (
        # At most one queued/running job per campaign.
        sa.Index(
            "uq_scrape_jobs_active_campaign",
            "campaign_id",
            unique=True,
            postgresql_where=sa.text("status IN ('queued', 'running')"),
            sqlite_where=sa.text("status IN ('queued', 'running')"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=JobStatus.queued.value, default=JobStatus.queued.value
    )
    trigger: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="manual", default="manual")
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    campaign: Mapped[Campaign] = relationship(back_populates="scrape_jobs")
    tasks: Mapped[list["ScrapeTask"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class ScrapeTask(Base):
    __tablename__ = "scrape_tasks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        sa.ForeignKey("scrape_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    post_id: Mapped[int] = mapped_column(
        sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=TaskStatus.queued.value, default=TaskStatus.queued.value, index=True
    )
    attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    result_views: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    result_likes: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    result_comments: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    result_shares: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, onupdate=utcnow, nullable=False
    )

    job: Mapped[ScrapeJob] = relationship(back_populates="tasks")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class EngagementSnapshot(Base):
    """Append-only point-in-time measurement of one post."""

    __tablename__ = "engagement_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(
        sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    views: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    likes: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    comments: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    shares: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    total_engagement: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0", default=0)
    source: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="scrape", default="scrape")
    recorded_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False, index=True
    )

    post: Mapped[Post] = relationship(back_populates="snapshots")

    @property
    def measured_at(self) -> datetime | None:
        return self.recorded_at
