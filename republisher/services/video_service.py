"""User-initiated video lifecycle actions.

Scheduling and resetting go through ORM attribute assignment so the
``Video.status`` validator enforces the state machine. The caller owns the
transaction (``get_session`` commits on success).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from republisher.exceptions import NotFoundError, VideoNotEligibleError
from republisher.models import PUBLISHABLE_STATUSES, Video, VideoStatus, as_utc
from republisher.utils.logging import get_logger

log = get_logger(__name__)


async def get_user_video(user_id: UUID, video_id: UUID, db: AsyncSession) -> Video:
    """Load a video owned by ``user_id``.

    Raises:
        NotFoundError: If missing or owned by another user.
    """
    video = await db.get(Video, video_id)
    if video is None or video.user_id != user_id:
        raise NotFoundError(f"Video not found: {video_id}")
    return video


async def schedule_video(
    user_id: UUID,
    video_id: UUID,
    scheduled_at: datetime,
    db: AsyncSession,
) -> Video:
    """Schedule (or reschedule) a pending or scheduled video.

    Raises:
        NotFoundError: Video missing or not owned by the user.
        VideoNotEligibleError: Video already posted or failed.
    """
    video = await get_user_video(user_id, video_id, db)
    if video.status not in PUBLISHABLE_STATUSES:
        raise VideoNotEligibleError(f"Cannot schedule a {video.status.value} video")
    if video.is_claimed:
        raise VideoNotEligibleError("Video is being published")

    video.scheduled_at = as_utc(scheduled_at)
    video.status = VideoStatus.SCHEDULED
    await db.flush()

    log.info(
        "video_scheduled",
        user_id=str(user_id),
        video_id=str(video_id),
        scheduled_at=video.scheduled_at.isoformat(),
    )
    return video


async def reset_failed_video(user_id: UUID, video_id: UUID, db: AsyncSession) -> Video:
    """Return a failed video to ``pending`` so it can be published again.

    Raises:
        NotFoundError: Video missing or not owned by the user.
        VideoNotEligibleError: Video is not failed.
    """
    video = await get_user_video(user_id, video_id, db)
    if video.status != VideoStatus.FAILED:
        raise VideoNotEligibleError(f"Only failed videos can be retried (status: {video.status.value})")

    video.status = VideoStatus.PENDING
    video.last_error = None
    video.scheduled_at = None
    await db.flush()

    log.info("video_reset", user_id=str(user_id), video_id=str(video_id))
    return video
