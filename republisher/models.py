"""SQLAlchemy 2.0 ORM models.

All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Encrypted Fields Pattern:
    OAuth tokens are stored encrypted by the vault in ``republisher.utils.encryption``.
    Encrypted columns follow the naming convention ``{field}_encrypted`` and hold
    the ``"<iv hex>:<ciphertext hex>"`` text blob.

    NEVER expose encrypted fields in __repr__ or log statements.

Timestamps:
    All timestamps are written as timezone-aware UTC. SQLite (tests) returns
    naive values, so comparisons in Python go through ``as_utc()``.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from republisher.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VideoStatus(enum.Enum):
    """Persisted publish status of a video.

    Flow:
        pending → scheduled → posted
        pending|scheduled → failed → pending (explicit reset)

    ``publishing`` is deliberately not a status: an in-flight publish is marked
    by the claim lease columns on Video instead.
    """

    PENDING = "pending"
    SCHEDULED = "scheduled"
    POSTED = "posted"
    FAILED = "failed"


# Statuses from which a publish may start
PUBLISHABLE_STATUSES = (VideoStatus.PENDING, VideoStatus.SCHEDULED)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class User(Base):
    """Account owner plus destination channel configuration.

    Attributes:
        id: Internal UUID primary key.
        email: Login email (optional, unique).
        access_token_encrypted: Vault blob of the YouTube OAuth access token.
        refresh_token_encrypted: Vault blob of the YouTube OAuth refresh token.
        token_expiry: When the access token expires (None = unknown/non-expiring).
        destination_channel_id: YouTube channel ID videos are published to.
        destination_channel_name: Display name of the destination channel.

    Note:
        Use TokenService to read or write tokens - NEVER access the encrypted
        fields directly.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    email: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    # Encrypted OAuth credentials
    access_token_encrypted: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    refresh_token_encrypted: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    token_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Destination channel (user settings)
    destination_channel_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    destination_channel_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    videos: Mapped[list["Video"]] = relationship("Video", back_populates="user")

    @property
    def can_publish(self) -> bool:
        """True when both tokens and a destination channel are configured."""
        return bool(
            self.access_token_encrypted
            and self.refresh_token_encrypted
            and self.destination_channel_id
        )

    def __repr__(self) -> str:
        connected = "yes" if self.access_token_encrypted else "no"
        return (
            f"<User(id={self.id!s:.8}, connected={connected}, "
            f"destination={self.destination_channel_id!r})>"
        )


class SourceChannel(Base):
    """A channel polled for new uploads. Read-only for the publish pipeline."""

    __tablename__ = "source_channels"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    channel_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    channel_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    last_fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<SourceChannel(channel_id={self.channel_id!r}, name={self.channel_name!r})>"


class Video(Base):
    """A source video and its republishing state.

    Attributes:
        external_video_id: Platform ID of the source video (download input).
        status: Publish status (see VideoStatus).
        scheduled_at: When the video becomes due for the sweep.
        posted_at: When the publish completed (set only with status=posted).
        destination_channel_id: Channel the video was published to.
        destination_video_id: Platform ID of the republished copy.
        last_error: Short reason for the latest failed attempt.
        claim_token: Lease held by the worker currently publishing this video.
        claimed_at: When the lease was taken (stale leases may be re-claimed).
    """

    __tablename__ = "videos"

    # Transitions allowed through ORM attribute assignment. The orchestrator's
    # conditional UPDATE statements encode the same rules in their WHERE clauses.
    VALID_TRANSITIONS = {
        VideoStatus.PENDING: [VideoStatus.SCHEDULED, VideoStatus.POSTED, VideoStatus.FAILED],
        VideoStatus.SCHEDULED: [VideoStatus.PENDING, VideoStatus.POSTED, VideoStatus.FAILED],
        VideoStatus.FAILED: [VideoStatus.PENDING],
        VideoStatus.POSTED: [],  # Terminal
    }

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_channel_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("source_channels.id", ondelete="SET NULL"),
        nullable=True,
    )
    external_video_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
    )

    # Metadata copied from the source platform
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    tags: Mapped[list[str] | None] = mapped_column(
        JSON,
        nullable=True,
    )
    thumbnail_url: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    duration_seconds: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    like_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[VideoStatus] = mapped_column(
        Enum(
            VideoStatus,
            native_enum=True,
            name="videostatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=VideoStatus.PENDING,
        index=True,
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    destination_channel_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    destination_video_id: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Publish lease (claim before download, cleared on finalize or release)
    claim_token: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
    )
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    user: Mapped["User"] = relationship("User", back_populates="videos")

    __table_args__ = (
        # Due-work query: user + status + scheduled_at ordering
        Index("ix_videos_user_id_status_scheduled_at", "user_id", "status", "scheduled_at"),
        # Quota query: posted count since midnight
        Index("ix_videos_user_id_posted_at", "user_id", "posted_at"),
        CheckConstraint(
            "status != 'posted' OR (posted_at IS NOT NULL AND destination_channel_id IS NOT NULL)",
            name="ck_videos_posted_has_destination",
        ),
        CheckConstraint(
            "status != 'scheduled' OR scheduled_at IS NOT NULL",
            name="ck_videos_scheduled_has_time",
        ),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: VideoStatus) -> VideoStatus:
        """Reject status assignments not listed in VALID_TRANSITIONS.

        Validation is skipped on creation (current status is None) and when the
        status is reassigned to its current value.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        if self.status is None or self.status == value:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )

        return value

    @property
    def is_claimed(self) -> bool:
        return self.claim_token is not None

    def __repr__(self) -> str:
        return (
            f"<Video(id={self.id!s:.8}, external_video_id={self.external_video_id!r}, "
            f"status={self.status.value!r})>"
        )


class Schedule(Base):
    """Per-user publishing policy. Read-only for the publish pipeline."""

    __tablename__ = "schedules"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
    )
    max_videos_per_day: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
        server_default="3",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("max_videos_per_day >= 0", name="ck_schedules_max_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<Schedule(user_id={self.user_id!s:.8}, active={self.is_active}, "
            f"max_videos_per_day={self.max_videos_per_day})>"
        )
