"""Publish orchestrator: the per-video republishing workflow.

Two entry points converge on one per-video procedure:

- ``run_sweep()``: the recurring job. For every active schedule, publish the
  user's due ``scheduled`` videos, oldest first, up to their remaining quota.
- ``publish_single()``: an explicit request for one video from the API.

Per-video procedure:
    0. claim   conditional UPDATE taking a lease on the row; refused when the
               user's posted-today plus leased videos already fill the quota
    1. token   resolve a fresh destination access token
    2. fetch   download the source video to the ephemeral workspace
    3. upload  publish it to the destination channel
    4. commit  conditional UPDATE to ``posted`` (only while the lease is ours)

Failure handling:
    - CredentialError: lease released, status untouched, operator alerted
    - DownloadError / UploadError: status ``failed`` with ``last_error``
    - anything else: lease released, status untouched, retried next sweep

Architecture Pattern: "Short Transaction"
    No session is held across a download or upload. Each step opens its own
    session from the injected factory and closes it before the slow work.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from republisher.clients.google_oauth import GoogleOAuthClient
from republisher.config import (
    get_claim_lease_seconds,
    get_daily_video_limit,
    get_download_root,
    get_publish_privacy_status,
)
from republisher.exceptions import (
    AlreadyPostedError,
    CredentialError,
    DownloadError,
    NotFoundError,
    QuotaExceededError,
    TransferError,
    UploadError,
    VideoNotEligibleError,
)
from republisher.models import (
    PUBLISHABLE_STATUSES,
    Schedule,
    User,
    Video,
    VideoStatus,
    utcnow,
)
from republisher.services.media_transfer import MediaTransferEngine
from republisher.services.quota_tracker import (
    available_slots,
    get_today_midnight,
    remaining_slots,
    slots_in_use_query,
)
from republisher.services.token_service import TokenService
from republisher.utils.alerts import send_alert
from republisher.utils.filesystem import get_download_dir
from republisher.utils.logging import get_logger

log = get_logger(__name__)

MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class VideoSnapshot:
    """Fields of a claimed video, copied so no session outlives the claim."""

    id: uuid.UUID
    user_id: uuid.UUID
    external_video_id: str
    title: str
    description: str
    tags: tuple[str, ...]
    destination_channel_id: str


@dataclass(frozen=True)
class PublishOutcome:
    """Result of a successful publish."""

    video_id: uuid.UUID
    destination_video_id: str
    posted_at: datetime


@dataclass
class SweepSummary:
    """Counters for one sweep, logged at the end and returned to the caller."""

    users_processed: int = 0
    users_at_quota: int = 0
    published: int = 0
    failed: int = 0
    skipped: int = 0
    credential_errors: int = 0
    errors: int = 0


class PublishOrchestrator:
    """Coordinates quota, credentials, transfer and status updates.

    Example:
        >>> orchestrator = PublishOrchestrator(session_factory, token_service, engine)
        >>> summary = await orchestrator.run_sweep()
        >>> outcome = await orchestrator.publish_single(user_id, video_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token_service: TokenService,
        media_engine: MediaTransferEngine,
        daily_limit: int | None = None,
        download_root: Path | None = None,
        privacy_status: str | None = None,
        lease_seconds: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.token_service = token_service
        self.media_engine = media_engine
        self.daily_limit = daily_limit if daily_limit is not None else get_daily_video_limit()
        self.download_root = download_root or get_download_root()
        self.privacy_status = privacy_status or get_publish_privacy_status()
        self.lease = timedelta(seconds=lease_seconds or get_claim_lease_seconds())
        self._sweep_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Scheduled sweep
    # ------------------------------------------------------------------

    async def run_sweep(self) -> SweepSummary | None:
        """Publish due scheduled videos for every active schedule.

        Returns:
            SweepSummary, or None when another sweep is already running in
            this process.
        """
        if self._sweep_lock.locked():
            log.info("publish_sweep_skipped", reason="sweep_in_progress")
            return None

        async with self._sweep_lock:
            summary = SweepSummary()
            log.info("publish_sweep_start", daily_limit=self.daily_limit)

            async with self.session_factory() as session:
                result = await session.execute(
                    select(Schedule.user_id, func.min(Schedule.max_videos_per_day))
                    .where(Schedule.is_active.is_(True))
                    .group_by(Schedule.user_id)
                )
                schedules = result.all()

            for user_id, max_videos_per_day in schedules:
                summary.users_processed += 1
                try:
                    await self._process_user(user_id, max_videos_per_day, summary)
                except Exception as e:
                    summary.errors += 1
                    log.error(
                        "publish_user_failed",
                        user_id=str(user_id),
                        error=str(e),
                        error_type=type(e).__name__,
                    )

            log.info(
                "publish_sweep_complete",
                users_processed=summary.users_processed,
                users_at_quota=summary.users_at_quota,
                published=summary.published,
                failed=summary.failed,
                skipped=summary.skipped,
                credential_errors=summary.credential_errors,
                errors=summary.errors,
            )
            return summary

    async def _process_user(
        self,
        user_id: uuid.UUID,
        max_videos_per_day: int,
        summary: SweepSummary,
    ) -> None:
        limit = min(max_videos_per_day, self.daily_limit)

        async with self.session_factory() as session:
            remaining = await remaining_slots(user_id, limit, session)
            if remaining == 0:
                summary.users_at_quota += 1
                log.info("user_quota_reached", user_id=str(user_id), daily_limit=limit)
                return

            result = await session.execute(
                select(Video.id)
                .where(
                    Video.user_id == user_id,
                    Video.status == VideoStatus.SCHEDULED,
                    Video.scheduled_at <= utcnow(),
                )
                .order_by(Video.scheduled_at.asc(), Video.created_at.asc())
                .limit(remaining)
            )
            video_ids = list(result.scalars().all())

        if not video_ids:
            return

        log.info(
            "user_batch_selected",
            user_id=str(user_id),
            due_videos=len(video_ids),
            remaining=remaining,
        )

        for video_id in video_ids:
            async with self.session_factory() as session:
                fresh_remaining = await available_slots(
                    user_id, limit, utcnow() - self.lease, session
                )
            remaining = min(remaining, fresh_remaining)
            if remaining <= 0:
                log.info("user_quota_reached", user_id=str(user_id), daily_limit=limit)
                break

            try:
                outcome = await self._publish_video(
                    user_id, video_id, (VideoStatus.SCHEDULED,), limit
                )
            except CredentialError as e:
                summary.credential_errors += 1
                log.warning(
                    "user_batch_aborted",
                    user_id=str(user_id),
                    video_id=str(video_id),
                    step="token",
                    error=str(e),
                )
                break
            except TransferError as e:
                summary.failed += 1
                log.warning(
                    "video_publish_failed",
                    user_id=str(user_id),
                    video_id=str(video_id),
                    error_type=type(e).__name__,
                )
                continue
            except Exception as e:
                summary.errors += 1
                log.error(
                    "video_publish_error",
                    user_id=str(user_id),
                    video_id=str(video_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if outcome is None:
                summary.skipped += 1
                continue

            summary.published += 1
            remaining -= 1

    # ------------------------------------------------------------------
    # Explicit single-video request
    # ------------------------------------------------------------------

    async def publish_single(self, user_id: uuid.UUID, video_id: uuid.UUID) -> PublishOutcome:
        """Publish one video immediately on the user's request.

        Raises:
            NotFoundError: Video missing or owned by another user.
            AlreadyPostedError: Video already posted (nothing is changed).
            VideoNotEligibleError: Video failed (reset first) or is being
                published by another worker.
            QuotaExceededError: No slots left today, counting publishes
                still in flight.
            CredentialError: Destination credentials unusable.
            DownloadError / UploadError: Transfer failed; video marked failed.
        """
        async with self.session_factory() as session:
            video = await session.get(Video, video_id)
            if video is None or video.user_id != user_id:
                raise NotFoundError(f"Video not found: {video_id}")
            if video.status == VideoStatus.POSTED:
                raise AlreadyPostedError(f"Video already posted: {video_id}")
            if video.status not in PUBLISHABLE_STATUSES:
                raise VideoNotEligibleError(
                    f"Video is {video.status.value}; reset it before publishing"
                )
            if await remaining_slots(user_id, self.daily_limit, session) == 0:
                raise QuotaExceededError(
                    f"Daily limit of {self.daily_limit} videos reached",
                    daily_limit=self.daily_limit,
                )

        outcome = await self._publish_video(
            user_id, video_id, PUBLISHABLE_STATUSES, self.daily_limit
        )
        if outcome is not None:
            return outcome

        async with self.session_factory() as session:
            current = await session.scalar(select(Video.status).where(Video.id == video_id))
            free = await available_slots(
                user_id, self.daily_limit, utcnow() - self.lease, session
            )
        if current == VideoStatus.POSTED:
            raise AlreadyPostedError(f"Video already posted: {video_id}")
        if current in PUBLISHABLE_STATUSES and free == 0:
            raise QuotaExceededError(
                f"Daily limit of {self.daily_limit} videos reached",
                daily_limit=self.daily_limit,
            )
        raise VideoNotEligibleError(f"Video {video_id} is being published or no longer eligible")

    # ------------------------------------------------------------------
    # Per-video procedure
    # ------------------------------------------------------------------

    async def _publish_video(
        self,
        user_id: uuid.UUID,
        video_id: uuid.UUID,
        statuses: tuple[VideoStatus, ...],
        daily_limit: int,
    ) -> PublishOutcome | None:
        """Run claim → token → download → upload → commit for one video.

        Returns:
            PublishOutcome on success, None if the claim was not obtained
            (leased elsewhere, no longer eligible, or quota full).
        """
        claim_token = str(uuid.uuid4())
        if not await self._claim(user_id, video_id, claim_token, statuses, daily_limit):
            log.info("video_claim_skipped", user_id=str(user_id), video_id=str(video_id))
            return None

        bound = log.bind(user_id=str(user_id), video_id=str(video_id))
        finalized = False
        local_path: Path | None = None
        try:
            try:
                snapshot = await self._load_snapshot(video_id)
                credentials = await self.token_service.ensure_fresh_credentials(user_id)
            except CredentialError as e:
                bound.warning("credential_unusable", step="token", error=str(e))
                await send_alert(
                    "WARNING",
                    "Destination credentials unusable; user must re-authorize",
                    details={"user_id": str(user_id), "reason": type(e).__name__},
                    throttle_key=f"credential:{user_id}",
                )
                raise

            try:
                download_dir = get_download_dir(str(user_id), self.download_root)
                local_path = await self.media_engine.download(
                    snapshot.external_video_id, download_dir
                )
            except DownloadError as e:
                bound.warning("video_download_failed", step="download", attempts=e.attempts)
                finalized = await self._mark_failed(video_id, claim_token, f"download: {e}")
                raise

            try:
                destination_video_id = await self.media_engine.upload(
                    local_path,
                    snapshot.title,
                    snapshot.description,
                    list(snapshot.tags),
                    credentials.access_token,
                    privacy_status=self.privacy_status,
                    refresh_token=credentials.refresh_token,
                )
            except UploadError as e:
                bound.warning("video_upload_failed", step="upload", error=str(e))
                finalized = await self._mark_failed(video_id, claim_token, f"upload: {e}")
                raise

            posted_at = utcnow()
            finalized = await self._mark_posted(
                snapshot, claim_token, destination_video_id, posted_at
            )
            if finalized:
                bound.info(
                    "video_posted",
                    destination_video_id=destination_video_id,
                    destination_channel_id=snapshot.destination_channel_id,
                )
            return PublishOutcome(
                video_id=video_id,
                destination_video_id=destination_video_id,
                posted_at=posted_at,
            )
        finally:
            self.media_engine.discard(local_path)
            if not finalized:
                await self._release_safely(video_id, claim_token)

    async def _claim(
        self,
        user_id: uuid.UUID,
        video_id: uuid.UUID,
        claim_token: str,
        statuses: tuple[VideoStatus, ...],
        daily_limit: int,
    ) -> bool:
        now = utcnow()
        lease_cutoff = now - self.lease
        slots_in_use = slots_in_use_query(
            user_id, get_today_midnight(now), lease_cutoff
        ).scalar_subquery()
        async with self.session_factory() as session, session.begin():
            # Serializes claims of one user so the slot count sees committed leases
            await session.execute(
                select(User.id).where(User.id == user_id).with_for_update()
            )
            result = await session.execute(
                update(Video)
                .where(
                    Video.id == video_id,
                    Video.user_id == user_id,
                    Video.status.in_(statuses),
                    or_(Video.claim_token.is_(None), Video.claimed_at < lease_cutoff),
                    slots_in_use < daily_limit,
                )
                .values(claim_token=claim_token, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def _load_snapshot(self, video_id: uuid.UUID) -> VideoSnapshot:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Video, User.destination_channel_id)
                .join(User, User.id == Video.user_id)
                .where(Video.id == video_id)
            )
            row = result.one_or_none()

        if row is None:
            raise NotFoundError(f"Video not found: {video_id}")
        video, destination_channel_id = row
        if not destination_channel_id:
            raise CredentialError(
                "No destination channel configured", user_id=str(video.user_id)
            )
        return VideoSnapshot(
            id=video.id,
            user_id=video.user_id,
            external_video_id=video.external_video_id,
            title=video.title or "",
            description=video.description or "",
            tags=tuple(video.tags or ()),
            destination_channel_id=destination_channel_id,
        )

    async def _mark_posted(
        self,
        snapshot: VideoSnapshot,
        claim_token: str,
        destination_video_id: str,
        posted_at: datetime,
    ) -> bool:
        current_destination = (
            select(User.destination_channel_id)
            .where(User.id == snapshot.user_id)
            .scalar_subquery()
        )
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(Video)
                .where(
                    Video.id == snapshot.id,
                    Video.claim_token == claim_token,
                    Video.status.in_(PUBLISHABLE_STATUSES),
                )
                .values(
                    status=VideoStatus.POSTED,
                    posted_at=posted_at,
                    destination_channel_id=func.coalesce(
                        current_destination, snapshot.destination_channel_id
                    ),
                    destination_video_id=destination_video_id,
                    last_error=None,
                    claim_token=None,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            log.warning(
                "video_posted_state_conflict",
                video_id=str(snapshot.id),
                destination_video_id=destination_video_id,
            )
            return False
        return True

    async def _mark_failed(self, video_id: uuid.UUID, claim_token: str, reason: str) -> bool:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(Video)
                .where(
                    Video.id == video_id,
                    Video.claim_token == claim_token,
                    Video.status.in_(PUBLISHABLE_STATUSES),
                )
                .values(
                    status=VideoStatus.FAILED,
                    last_error=reason[:MAX_ERROR_LENGTH],
                    claim_token=None,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            log.warning("video_failed_state_conflict", video_id=str(video_id))
            return False
        log.info("video_marked_failed", video_id=str(video_id))
        return True

    async def _release(self, video_id: uuid.UUID, claim_token: str) -> None:
        async with self.session_factory() as session, session.begin():
            await session.execute(
                update(Video)
                .where(Video.id == video_id, Video.claim_token == claim_token)
                .values(claim_token=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )

    async def _release_safely(self, video_id: uuid.UUID, claim_token: str) -> None:
        # Runs in a finally block; a failure here must not mask the original error.
        # The lease expires on its own if this write is lost.
        try:
            await self._release(video_id, claim_token)
        except Exception as e:
            log.error(
                "video_claim_release_failed",
                video_id=str(video_id),
                error=str(e),
                error_type=type(e).__name__,
            )


def create_publish_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    oauth_client: GoogleOAuthClient,
) -> PublishOrchestrator:
    """Wire an orchestrator from environment configuration."""
    return PublishOrchestrator(
        session_factory=session_factory,
        token_service=TokenService(session_factory, oauth_client),
        media_engine=MediaTransferEngine(),
    )
