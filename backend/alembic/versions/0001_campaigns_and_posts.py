"""create campaigns and posts

Revision ID: 0001_campaigns_and_posts
Revises:
Create Date: 2026-10-19 10:40:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0001_campaigns_and_posts"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "campaigns",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("song_title", sa.String(255), nullable=False),
        sa.Column("song_artist", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="Active"),
        sa.Column("share_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("share_slug", sa.String(64), nullable=True, unique=True),
        sa.Column("share_password_hash", sa.Text(), nullable=True),
        sa.Column("share_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "posts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("campaign_id", sa.Integer(), sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("canonical_url", sa.Text(), nullable=False),
        sa.Column("post_key", sa.String(1024), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("external_post_id", sa.String(255), nullable=True),
        sa.Column("creator_name", sa.String(255), nullable=True),
        sa.Column("workflow_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("views", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("likes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("comments", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("shares", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("engagement_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("scrape_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("last_scraped_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("campaign_id", "post_key", name="uq_posts_campaign_post_key"),
    )


def downgrade() -> None:
    op.drop_table("posts")
    op.drop_table("campaigns")
