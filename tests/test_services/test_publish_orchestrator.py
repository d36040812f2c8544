"""Tests for the publish orchestrator: sweep, single publish and leases."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from google.auth import exceptions as google_auth_exceptions
from sqlalchemy import update

from republisher.clients.google_oauth import OAuthRefreshError, OAuthTokens
from republisher.exceptions import (
    AlreadyPostedError,
    CredentialError,
    DownloadError,
    NotFoundError,
    QuotaExceededError,
    RefreshError,
    UploadError,
    VideoNotEligibleError,
)
from republisher.models import Video, VideoStatus, as_utc
from republisher.services.media_transfer import MediaTransferEngine
from republisher.services.publish_orchestrator import PublishOutcome
from republisher.services.quota_tracker import posted_today_count
from tests.support.fakes import (
    DESTINATION_CHANNEL_ID,
    FakeMediaEngine,
    create_schedule,
    create_user,
    create_video,
    reload_video,
)


def _hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


async def _set_claim(session_factory, video_id, claimed_at: datetime) -> None:
    async with session_factory() as session, session.begin():
        await session.execute(
            update(Video)
            .where(Video.id == video_id)
            .values(claim_token=str(uuid.uuid4()), claimed_at=claimed_at)
        )


async def _posted_today(session_factory, user_id) -> int:
    async with session_factory() as session:
        return await posted_today_count(user_id, session)


class TestRunSweep:
    @pytest.mark.asyncio
    async def test_publishes_due_videos_oldest_first_up_to_limit(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        """Test a sweep publishes the oldest due videos until the quota is used."""
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id, max_videos_per_day=3)
        newest = await create_video(session_factory, user.id, scheduled_at=_hours_ago(1))
        oldest = await create_video(session_factory, user.id, scheduled_at=_hours_ago(3))
        middle = await create_video(session_factory, user.id, scheduled_at=_hours_ago(2))
        future = await create_video(
            session_factory, user.id, scheduled_at=datetime.now(timezone.utc) + timedelta(hours=1)
        )
        orchestrator = make_orchestrator(fake_media_engine, daily_limit=2)

        summary = await orchestrator.run_sweep()

        assert summary.users_processed == 1
        assert summary.published == 2
        assert fake_media_engine.downloads == [
            oldest.external_video_id,
            middle.external_video_id,
        ]
        assert (await reload_video(session_factory, oldest.id)).status == VideoStatus.POSTED
        assert (await reload_video(session_factory, middle.id)).status == VideoStatus.POSTED
        assert (await reload_video(session_factory, newest.id)).status == VideoStatus.SCHEDULED
        assert (await reload_video(session_factory, future.id)).status == VideoStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_posted_video_records_destination(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        """Test a posted video carries posted_at, destination ids and no lease."""
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        video = await create_video(session_factory, user.id, tags=["a", "b"])

        await make_orchestrator(fake_media_engine).run_sweep()

        stored = await reload_video(session_factory, video.id)
        assert stored.status == VideoStatus.POSTED
        assert stored.posted_at is not None
        assert stored.destination_channel_id == DESTINATION_CHANNEL_ID
        assert stored.destination_video_id == "dest0001"
        assert stored.claim_token is None
        assert fake_media_engine.uploads[0]["tags"] == ["a", "b"]
        assert fake_media_engine.uploads[0]["access_token"] == "ya29.current-access"
        assert not fake_media_engine.uploads[0]["path"].exists()

    @pytest.mark.asyncio
    async def test_schedule_limit_below_daily_limit(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id, max_videos_per_day=1)
        for hours in (1, 2, 3):
            await create_video(session_factory, user.id, scheduled_at=_hours_ago(hours))

        summary = await make_orchestrator(fake_media_engine, daily_limit=5).run_sweep()

        assert summary.published == 1

    @pytest.mark.asyncio
    async def test_quota_reached_skips_user(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        """Test a user already at their limit today gets nothing published."""
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        await create_video(session_factory, user.id, status=VideoStatus.POSTED)
        await create_video(session_factory, user.id, status=VideoStatus.POSTED)
        due = await create_video(session_factory, user.id)

        summary = await make_orchestrator(fake_media_engine, daily_limit=2).run_sweep()

        assert summary.users_at_quota == 1
        assert summary.published == 0
        assert fake_media_engine.downloads == []
        assert (await reload_video(session_factory, due.id)).status == VideoStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_inactive_schedule_and_pending_videos_ignored(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        active_user = await create_user(session_factory)
        inactive_user = await create_user(session_factory)
        await create_schedule(session_factory, active_user.id)
        await create_schedule(session_factory, inactive_user.id, is_active=False)
        pending = await create_video(session_factory, active_user.id, status=VideoStatus.PENDING)
        await create_video(session_factory, inactive_user.id)

        summary = await make_orchestrator(fake_media_engine).run_sweep()

        assert summary.users_processed == 1
        assert fake_media_engine.downloads == []
        assert (await reload_video(session_factory, pending.id)).status == VideoStatus.PENDING

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_before_upload(
        self, make_orchestrator, fake_media_engine, session_factory, oauth_client
    ):
        """Test an expired access token is refreshed and the new one used."""
        user = await create_user(session_factory, token_expiry=_hours_ago(1))
        await create_schedule(session_factory, user.id)
        video = await create_video(session_factory, user.id)
        oauth_client.refresh_access_token.return_value = OAuthTokens(
            access_token="ya29.refreshed",
            expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        )

        summary = await make_orchestrator(fake_media_engine).run_sweep()

        assert summary.published == 1
        assert fake_media_engine.uploads[0]["access_token"] == "ya29.refreshed"
        assert (await reload_video(session_factory, video.id)).status == VideoStatus.POSTED

    @pytest.mark.asyncio
    async def test_download_failure_marks_failed_and_continues(
        self, make_orchestrator, session_factory
    ):
        """Test a failed transfer marks that video failed; the sweep moves on."""
        engine = FakeMediaEngine(
            download_error=DownloadError(
                "All download strategies failed", video_id="x", attempts=[("yt_dlp", "timeout")]
            )
        )
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        first = await create_video(session_factory, user.id, scheduled_at=_hours_ago(2))
        second = await create_video(session_factory, user.id, scheduled_at=_hours_ago(1))

        summary = await make_orchestrator(engine, daily_limit=2).run_sweep()

        assert summary.failed == 2
        assert summary.published == 0
        for video_id in (first.id, second.id):
            stored = await reload_video(session_factory, video_id)
            assert stored.status == VideoStatus.FAILED
            assert stored.last_error.startswith("download:")
            assert stored.claim_token is None
            assert stored.posted_at is None

    @pytest.mark.asyncio
    async def test_upload_failure_marks_failed_and_discards_file(
        self, make_orchestrator, session_factory
    ):
        engine = FakeMediaEngine(upload_error=UploadError("quotaExceeded"))
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        video = await create_video(session_factory, user.id)

        summary = await make_orchestrator(engine).run_sweep()

        assert summary.failed == 1
        stored = await reload_video(session_factory, video.id)
        assert stored.status == VideoStatus.FAILED
        assert "quotaExceeded" in stored.last_error
        discarded = [path for path in engine.discarded if path is not None]
        assert discarded and not discarded[0].exists()

    @pytest.mark.asyncio
    async def test_credential_error_stops_batch_and_keeps_status(
        self, make_orchestrator, fake_media_engine, session_factory, oauth_client
    ):
        """Test revoked credentials leave videos scheduled and unclaimed."""
        user = await create_user(session_factory, token_expiry=_hours_ago(1))
        await create_schedule(session_factory, user.id)
        first = await create_video(session_factory, user.id, scheduled_at=_hours_ago(2))
        second = await create_video(session_factory, user.id, scheduled_at=_hours_ago(1))
        oauth_client.refresh_access_token.side_effect = OAuthRefreshError(
            "rejected", status_code=400, error_code="invalid_grant"
        )

        summary = await make_orchestrator(fake_media_engine).run_sweep()

        assert summary.credential_errors == 1
        assert oauth_client.refresh_access_token.await_count == 1
        assert fake_media_engine.downloads == []
        for video_id in (first.id, second.id):
            stored = await reload_video(session_factory, video_id)
            assert stored.status == VideoStatus.SCHEDULED
            assert stored.claim_token is None

    @pytest.mark.asyncio
    async def test_credential_error_alerts_operator(
        self, make_orchestrator, fake_media_engine, session_factory, mocker
    ):
        """Test an unusable destination raises one throttled alert for the user."""
        alert = mocker.patch(
            "republisher.services.publish_orchestrator.send_alert", new_callable=AsyncMock
        )
        user = await create_user(session_factory, destination_channel_id=None)
        await create_schedule(session_factory, user.id)
        await create_video(session_factory, user.id)

        await make_orchestrator(fake_media_engine).run_sweep()

        alert.assert_awaited_once()
        assert alert.call_args.kwargs["throttle_key"] == f"credential:{user.id}"
        assert alert.call_args.kwargs["details"]["reason"] == "CredentialError"

    @pytest.mark.asyncio
    async def test_credential_error_for_one_user_does_not_block_others(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        disconnected = await create_user(session_factory, destination_channel_id=None)
        connected = await create_user(session_factory)
        await create_schedule(session_factory, disconnected.id)
        await create_schedule(session_factory, connected.id)
        await create_video(session_factory, disconnected.id)
        ok = await create_video(session_factory, connected.id)

        summary = await make_orchestrator(fake_media_engine).run_sweep()

        assert summary.credential_errors == 1
        assert summary.published == 1
        assert (await reload_video(session_factory, ok.id)).status == VideoStatus.POSTED

    @pytest.mark.asyncio
    async def test_overlapping_sweep_is_skipped(self, make_orchestrator, session_factory):
        """Test a second sweep started while one runs returns None immediately."""
        engine = FakeMediaEngine(upload_delay=0.05)
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        video = await create_video(session_factory, user.id)
        orchestrator = make_orchestrator(engine)

        first, second = await asyncio.gather(orchestrator.run_sweep(), orchestrator.run_sweep())

        assert first.published == 1
        assert second is None
        assert len(engine.uploads) == 1
        assert (await reload_video(session_factory, video.id)).status == VideoStatus.POSTED

    @pytest.mark.asyncio
    async def test_leased_video_is_skipped(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        """Test a video claimed by another worker is not published twice."""
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        video = await create_video(session_factory, user.id)
        await _set_claim(session_factory, video.id, datetime.now(timezone.utc))

        summary = await make_orchestrator(fake_media_engine).run_sweep()

        assert summary.skipped == 1
        assert fake_media_engine.downloads == []
        assert (await reload_video(session_factory, video.id)).status == VideoStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_stale_lease_is_reclaimed(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        """Test a lease older than the lease period is taken over."""
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        video = await create_video(session_factory, user.id)
        await _set_claim(session_factory, video.id, _hours_ago(3))

        summary = await make_orchestrator(fake_media_engine, lease_seconds=3600).run_sweep()

        assert summary.published == 1
        assert (await reload_video(session_factory, video.id)).status == VideoStatus.POSTED


    @pytest.mark.asyncio
    async def test_leased_video_holds_quota_slot(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        """Test a video in flight elsewhere counts against the user's quota."""
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        in_flight = await create_video(session_factory, user.id, scheduled_at=_hours_ago(3))
        waiting = await create_video(session_factory, user.id, scheduled_at=_hours_ago(2))
        await _set_claim(session_factory, in_flight.id, datetime.now(timezone.utc))

        summary = await make_orchestrator(fake_media_engine, daily_limit=1).run_sweep()

        assert summary.published == 0
        assert fake_media_engine.downloads == []
        assert (await reload_video(session_factory, waiting.id)).claim_token is None

    @pytest.mark.asyncio
    async def test_sweep_racing_single_publish_respects_limit(
        self, make_orchestrator, session_factory
    ):
        """Test a sweep and an explicit publish running together share one quota."""
        engine = FakeMediaEngine(upload_delay=0.2)
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        due = await create_video(session_factory, user.id)
        requested = await create_video(session_factory, user.id, status=VideoStatus.PENDING)
        orchestrator = make_orchestrator(engine, daily_limit=1)

        summary, single = await asyncio.gather(
            orchestrator.run_sweep(),
            orchestrator.publish_single(user.id, requested.id),
            return_exceptions=True,
        )

        assert await _posted_today(session_factory, user.id) == 1
        assert len(engine.uploads) == 1
        if isinstance(single, PublishOutcome):
            assert summary.published == 0
            assert (await reload_video(session_factory, due.id)).status == VideoStatus.SCHEDULED
        else:
            assert isinstance(single, QuotaExceededError)
            assert summary.published == 1
            assert (await reload_video(session_factory, requested.id)).status == VideoStatus.PENDING

    @pytest.mark.asyncio
    async def test_upload_auth_failure_marks_failed(self, make_orchestrator, session_factory):
        """Test a revoked grant during upload marks the video failed instead of retrying it."""

        class WritingStrategy:
            name = "writing"

            async def attempt(self, video_id, output_path):
                output_path.write_bytes(b"\x00\x00\x00\x18ftypmp42")

        upload_client = AsyncMock()
        upload_client.upload.side_effect = google_auth_exceptions.RefreshError("invalid_grant")
        engine = MediaTransferEngine(strategies=[WritingStrategy()], upload_client=upload_client)
        user = await create_user(session_factory)
        await create_schedule(session_factory, user.id)
        video = await create_video(session_factory, user.id)

        summary = await make_orchestrator(engine).run_sweep()

        assert summary.failed == 1
        assert summary.errors == 0
        assert upload_client.upload.call_args.kwargs["refresh_token"] == "1//refresh-token"
        stored = await reload_video(session_factory, video.id)
        assert stored.status == VideoStatus.FAILED
        assert stored.last_error.startswith("upload: Failed to upload video: RefreshError")
        assert stored.claim_token is None


class TestPublishSingle:
    @pytest.mark.asyncio
    async def test_publishes_pending_video(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        user = await create_user(session_factory)
        video = await create_video(session_factory, user.id, status=VideoStatus.PENDING)

        outcome = await make_orchestrator(fake_media_engine).publish_single(user.id, video.id)

        assert outcome.video_id == video.id
        assert outcome.destination_video_id == "dest0001"
        stored = await reload_video(session_factory, video.id)
        assert stored.status == VideoStatus.POSTED
        assert abs(as_utc(stored.posted_at) - outcome.posted_at) < timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_second_publish_is_rejected_without_upload(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        """Test publishing twice uploads once and reports AlreadyPosted."""
        user = await create_user(session_factory)
        video = await create_video(session_factory, user.id)
        orchestrator = make_orchestrator(fake_media_engine)

        await orchestrator.publish_single(user.id, video.id)
        with pytest.raises(AlreadyPostedError):
            await orchestrator.publish_single(user.id, video.id)

        assert len(fake_media_engine.uploads) == 1

    @pytest.mark.asyncio
    async def test_unknown_or_foreign_video(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        owner = await create_user(session_factory)
        stranger = await create_user(session_factory)
        video = await create_video(session_factory, owner.id)
        orchestrator = make_orchestrator(fake_media_engine)

        with pytest.raises(NotFoundError):
            await orchestrator.publish_single(stranger.id, video.id)
        with pytest.raises(NotFoundError):
            await orchestrator.publish_single(owner.id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_failed_video_not_eligible(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        user = await create_user(session_factory)
        video = await create_video(session_factory, user.id, status=VideoStatus.FAILED)

        with pytest.raises(VideoNotEligibleError):
            await make_orchestrator(fake_media_engine).publish_single(user.id, video.id)

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, make_orchestrator, fake_media_engine, session_factory):
        """Test the daily limit is enforced before any side effect."""
        user = await create_user(session_factory)
        await create_video(session_factory, user.id, status=VideoStatus.POSTED)
        video = await create_video(session_factory, user.id, status=VideoStatus.PENDING)

        with pytest.raises(QuotaExceededError) as exc_info:
            await make_orchestrator(fake_media_engine, daily_limit=1).publish_single(
                user.id, video.id
            )

        assert exc_info.value.daily_limit == 1
        assert fake_media_engine.downloads == []
        assert (await reload_video(session_factory, video.id)).claim_token is None

    @pytest.mark.asyncio
    async def test_claimed_video_not_eligible(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        user = await create_user(session_factory)
        video = await create_video(session_factory, user.id)
        await _set_claim(session_factory, video.id, datetime.now(timezone.utc))

        with pytest.raises(VideoNotEligibleError):
            await make_orchestrator(fake_media_engine).publish_single(user.id, video.id)

        assert fake_media_engine.downloads == []

    @pytest.mark.asyncio
    async def test_refresh_failure_propagates(
        self, make_orchestrator, fake_media_engine, session_factory, oauth_client
    ):
        user = await create_user(session_factory, token_expiry=_hours_ago(1))
        video = await create_video(session_factory, user.id)
        oauth_client.refresh_access_token.side_effect = OAuthRefreshError("rejected", status_code=400)

        with pytest.raises(RefreshError):
            await make_orchestrator(fake_media_engine).publish_single(user.id, video.id)

        stored = await reload_video(session_factory, video.id)
        assert stored.status == VideoStatus.SCHEDULED
        assert stored.claim_token is None

    @pytest.mark.asyncio
    async def test_missing_destination_is_credential_error(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        user = await create_user(session_factory, destination_channel_id=None)
        video = await create_video(session_factory, user.id)

        with pytest.raises(CredentialError):
            await make_orchestrator(fake_media_engine).publish_single(user.id, video.id)

        assert (await reload_video(session_factory, video.id)).claim_token is None

    @pytest.mark.asyncio
    async def test_upload_error_propagates_and_marks_failed(
        self, make_orchestrator, session_factory
    ):
        engine = FakeMediaEngine(upload_error=UploadError("Upload exceeded timeout"))
        user = await create_user(session_factory)
        video = await create_video(session_factory, user.id)

        with pytest.raises(UploadError):
            await make_orchestrator(engine).publish_single(user.id, video.id)

        stored = await reload_video(session_factory, video.id)
        assert stored.status == VideoStatus.FAILED
        assert stored.last_error == "upload: Upload exceeded timeout"

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_lease(self, make_orchestrator, session_factory):
        """Test an unclassified error leaves the video retryable."""
        engine = FakeMediaEngine(upload_error=RuntimeError("disk vanished"))
        user = await create_user(session_factory)
        video = await create_video(session_factory, user.id)

        with pytest.raises(RuntimeError):
            await make_orchestrator(engine).publish_single(user.id, video.id)

        stored = await reload_video(session_factory, video.id)
        assert stored.status == VideoStatus.SCHEDULED
        assert stored.claim_token is None
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_concurrent_requests_respect_daily_limit(
        self, make_orchestrator, session_factory
    ):
        """Test two simultaneous publishes cannot both take the last slot."""
        engine = FakeMediaEngine(upload_delay=0.2)
        user = await create_user(session_factory)
        first = await create_video(session_factory, user.id, status=VideoStatus.PENDING)
        second = await create_video(session_factory, user.id, status=VideoStatus.PENDING)
        orchestrator = make_orchestrator(engine, daily_limit=1)

        results = await asyncio.gather(
            orchestrator.publish_single(user.id, first.id),
            orchestrator.publish_single(user.id, second.id),
            return_exceptions=True,
        )

        assert sum(isinstance(r, PublishOutcome) for r in results) == 1
        assert sum(isinstance(r, QuotaExceededError) for r in results) == 1
        assert len(engine.uploads) == 1
        assert await _posted_today(session_factory, user.id) == 1

    @pytest.mark.asyncio
    async def test_in_flight_publish_counts_against_quota(
        self, make_orchestrator, fake_media_engine, session_factory
    ):
        user = await create_user(session_factory)
        in_flight = await create_video(session_factory, user.id)
        video = await create_video(session_factory, user.id, status=VideoStatus.PENDING)
        await _set_claim(session_factory, in_flight.id, datetime.now(timezone.utc))

        with pytest.raises(QuotaExceededError):
            await make_orchestrator(fake_media_engine, daily_limit=1).publish_single(
                user.id, video.id
            )

        assert fake_media_engine.downloads == []
        assert (await reload_video(session_factory, video.id)).claim_token is None

    @pytest.mark.asyncio
    async def test_lost_lease_does_not_overwrite_new_holder(
        self, make_orchestrator, session_factory
    ):
        """Test the posted write is skipped once another worker holds the lease."""
        user = await create_user(session_factory)
        video = await create_video(session_factory, user.id)

        async def take_over() -> None:
            await _set_claim(session_factory, video.id, datetime.now(timezone.utc))

        engine = FakeMediaEngine(on_upload=take_over)

        await make_orchestrator(engine).publish_single(user.id, video.id)

        stored = await reload_video(session_factory, video.id)
        assert stored.status == VideoStatus.SCHEDULED
        assert stored.destination_video_id is None
        assert stored.claim_token is not None
