"""001 initial schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates users, source_channels, videos and schedules, including the publish
lease columns and the posted/scheduled CHECK constraints on videos.
"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

VIDEO_STATUS = postgresql.ENUM(
    "pending", "scheduled", "posted", "failed", name="videostatus", create_type=False
)


def upgrade() -> None:
    """Create all tables."""
    VIDEO_STATUS.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("destination_channel_id", sa.String(64), nullable=True),
        sa.Column("destination_channel_name", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "source_channels",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("channel_id", sa.String(64), nullable=False),
        sa.Column("channel_name", sa.String(255), nullable=True),
        sa.Column("last_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_source_channels_user_id", "source_channels", ["user_id"])

    op.create_table(
        "videos",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("source_channel_id", sa.Uuid(), nullable=True),
        sa.Column("external_video_id", sa.String(32), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("thumbnail_url", sa.String(500), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("like_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("comment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", VIDEO_STATUS, nullable=False, server_default="pending"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("destination_channel_id", sa.String(64), nullable=True),
        sa.Column("destination_video_id", sa.String(32), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claim_token", sa.String(36), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["source_channel_id"], ["source_channels.id"], ondelete="SET NULL"
        ),
        sa.CheckConstraint(
            "status != 'posted' OR (posted_at IS NOT NULL AND destination_channel_id IS NOT NULL)",
            name="ck_videos_posted_has_destination",
        ),
        sa.CheckConstraint(
            "status != 'scheduled' OR scheduled_at IS NOT NULL",
            name="ck_videos_scheduled_has_time",
        ),
    )
    op.create_index("ix_videos_external_video_id", "videos", ["external_video_id"])
    op.create_index("ix_videos_status", "videos", ["status"])
    op.create_index(
        "ix_videos_user_id_status_scheduled_at",
        "videos",
        ["user_id", "status", "scheduled_at"],
    )
    op.create_index("ix_videos_user_id_posted_at", "videos", ["user_id", "posted_at"])

    op.create_table(
        "schedules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_videos_per_day", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.CheckConstraint("max_videos_per_day >= 0", name="ck_schedules_max_non_negative"),
    )
    op.create_index("ix_schedules_user_id", "schedules", ["user_id"])
    op.create_index("ix_schedules_is_active", "schedules", ["is_active"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("schedules")
    op.drop_table("videos")
    op.drop_table("source_channels")
    op.drop_table("users")
    VIDEO_STATUS.drop(op.get_bind(), checkfirst=True)
