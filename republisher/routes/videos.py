"""Video publishing routes.

- POST /api/v1/videos/{video_id}/publish   publish one video now
- POST /api/v1/videos/{video_id}/schedule  schedule a video for the sweep
- POST /api/v1/videos/{video_id}/retry     reset a failed video to pending
- GET  /api/v1/quota                       today's quota for the caller

The caller's identity arrives in the ``X-User-Id`` header, set by the
upstream auth gateway.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from republisher.config import get_daily_video_limit
from republisher.database import get_session
from republisher.exceptions import (
    AlreadyPostedError,
    CredentialError,
    NotFoundError,
    QuotaExceededError,
    RepublisherError,
    TransferError,
    VideoNotEligibleError,
)
from republisher.schemas.video import (
    PublishResponse,
    QuotaResponse,
    ScheduleRequest,
    VideoResponse,
)
from republisher.services import video_service
from republisher.services.publish_orchestrator import PublishOrchestrator
from republisher.services.quota_tracker import get_quota_status

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["videos"])

# Most specific first: RefreshError is a CredentialError
_ERROR_STATUS: list[tuple[type[RepublisherError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyPostedError, status.HTTP_409_CONFLICT),
    (VideoNotEligibleError, status.HTTP_409_CONFLICT),
    (QuotaExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
    (CredentialError, status.HTTP_403_FORBIDDEN),
    (TransferError, status.HTTP_502_BAD_GATEWAY),
]


def to_http_exception(error: RepublisherError) -> HTTPException:
    """Translate a domain error into the HTTP error the API returns."""
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> UUID:
    try:
        return UUID(x_user_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity"
        ) from e


def get_orchestrator(request: Request) -> PublishOrchestrator:
    """Orchestrator built in the app lifespan (overridable in tests)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Publishing is not configured",
        )
    return orchestrator


@router.post("/videos/{video_id}/publish", response_model=PublishResponse)
async def publish_video(
    video_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: PublishOrchestrator = Depends(get_orchestrator),
) -> PublishResponse:
    """Publish one video immediately.

    Returns:
        200 OK: Video posted
        404 Not Found: Unknown video
        409 Conflict: Already posted, failed, or being published
        429 Too Many Requests: Daily limit reached
        403 Forbidden: Destination channel must be re-authorized
        502 Bad Gateway: Download or upload failed (video marked failed)
    """
    try:
        outcome = await orchestrator.publish_single(user_id, video_id)
    except RepublisherError as e:
        log.info(
            "publish_request_rejected",
            user_id=str(user_id),
            video_id=str(video_id),
            error_type=type(e).__name__,
        )
        raise to_http_exception(e) from e

    return PublishResponse(
        video_id=outcome.video_id,
        destination_video_id=outcome.destination_video_id,
        posted_at=outcome.posted_at,
    )


@router.post("/videos/{video_id}/schedule", response_model=VideoResponse)
async def schedule_video(
    video_id: UUID,
    body: ScheduleRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> VideoResponse:
    try:
        video = await video_service.schedule_video(user_id, video_id, body.scheduled_at, db)
    except RepublisherError as e:
        raise to_http_exception(e) from e
    return VideoResponse.model_validate(video)


@router.post("/videos/{video_id}/retry", response_model=VideoResponse)
async def retry_video(
    video_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> VideoResponse:
    """Reset a failed video to pending. It is not published by this call."""
    try:
        video = await video_service.reset_failed_video(user_id, video_id, db)
    except RepublisherError as e:
        raise to_http_exception(e) from e
    return VideoResponse.model_validate(video)


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> QuotaResponse:
    quota = await get_quota_status(user_id, get_daily_video_limit(), db)
    return QuotaResponse.model_validate(quota)
