"""Per-user daily publish quota.

A user's quota is the number of their videos that reached ``posted`` since
local midnight (server clock). Counts are recomputed from the videos table on
every call and never cached, so concurrent publishes always see each other's
committed results.

Architecture Pattern:
    - Pre-claim verification: check remaining slots BEFORE claiming a video
    - Slot reservation: a live claim lease holds a slot until the video is
      posted or released, and the claim UPDATE itself refuses to exceed the
      limit (see ``slots_in_use_query``)
    - Daily reset: local midnight of the server clock
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from republisher.models import PUBLISHABLE_STATUSES, Video, VideoStatus
from republisher.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    """Snapshot of a user's quota for display."""

    daily_limit: int
    posted_today: int
    remaining: int
    window_start: datetime


def get_today_midnight(now: datetime | None = None) -> datetime:
    """Start of the current quota window as an aware UTC datetime.

    Args:
        now: Reference time (defaults to the current time). Naive values are
            taken as local server time.

    Example:
        >>> get_today_midnight()  # server in UTC+2 on 2024-05-02 10:00 local
        datetime.datetime(2024, 5, 1, 22, 0, tzinfo=datetime.timezone.utc)
    """
    local_now = (now or datetime.now()).astimezone()
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


async def posted_today_count(user_id: UUID, db: AsyncSession) -> int:
    """Count the user's videos posted since local midnight."""
    midnight = get_today_midnight()
    result = await db.execute(
        select(func.count(Video.id)).where(
            Video.user_id == user_id,
            Video.status == VideoStatus.POSTED,
            Video.posted_at >= midnight,
        )
    )
    return int(result.scalar_one())


async def remaining_slots(user_id: UUID, daily_limit: int, db: AsyncSession) -> int:
    """Publish slots left today (never negative).

    Example:
        >>> await remaining_slots(user_id, 2, db)
        1
    """
    posted = await posted_today_count(user_id, db)
    remaining = max(0, daily_limit - posted)
    log.debug(
        "quota_checked",
        user_id=str(user_id),
        posted_today=posted,
        daily_limit=daily_limit,
        remaining=remaining,
    )
    return remaining


async def get_quota_status(user_id: UUID, daily_limit: int, db: AsyncSession) -> QuotaStatus:
    """Posted count, remaining slots and window start for a user."""
    posted = await posted_today_count(user_id, db)
    return QuotaStatus(
        daily_limit=daily_limit,
        posted_today=posted,
        remaining=max(0, daily_limit - posted),
        window_start=get_today_midnight(),
    )


def slots_in_use_query(
    user_id: UUID, window_start: datetime, lease_cutoff: datetime
) -> Select:
    """Select counting the user's posted-today videos plus live claim leases.

    Built over an alias of ``videos`` so it can sit inside an UPDATE of the
    same table without correlating to the row being claimed.

    Args:
        user_id: Owner of the quota.
        window_start: Start of the quota window (see ``get_today_midnight``).
        lease_cutoff: Leases taken before this instant are stale and hold no slot.
    """
    counted = aliased(Video)
    return select(func.count(counted.id)).where(
        counted.user_id == user_id,
        or_(
            and_(
                counted.status == VideoStatus.POSTED,
                counted.posted_at >= window_start,
            ),
            and_(
                counted.status.in_(PUBLISHABLE_STATUSES),
                counted.claim_token.is_not(None),
                counted.claimed_at >= lease_cutoff,
            ),
        ),
    )


async def available_slots(
    user_id: UUID,
    daily_limit: int,
    lease_cutoff: datetime,
    db: AsyncSession,
) -> int:
    """Slots left today once in-flight publishes are counted (never negative)."""
    result = await db.execute(slots_in_use_query(user_id, get_today_midnight(), lease_cutoff))
    return max(0, daily_limit - int(result.scalar_one()))
