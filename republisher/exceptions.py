"""Shared exceptions for the republishing pipeline.

The taxonomy mirrors how a failure must be handled:

    CredentialError / RefreshError
        Stored credential unusable. Video status is left unchanged and the
        user must re-authorize; never retried automatically.
    DownloadError / UploadError (TransferError)
        Execution failure. The video is marked failed.
    QuotaExceededError / NotFoundError / AlreadyPostedError / VideoNotEligibleError
        (PublishRejectedError) Request rejected before any side effect.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from republisher.models import VideoStatus


class RepublisherError(Exception):
    """Base class for all domain errors."""


class ConfigurationError(RepublisherError):
    """Raised when required configuration is missing or invalid."""


class CredentialError(RepublisherError):
    """Raised when a user's stored OAuth credentials cannot be used.

    Attributes:
        user_id: The user whose credentials failed (string form, never the token).
    """

    def __init__(self, message: str, user_id: str | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.user_id:
            return f"{super().__str__()} (user_id={self.user_id})"
        return super().__str__()


class RefreshError(CredentialError):
    """Raised when the OAuth provider rejects or fails a refresh-token exchange."""


class TransferError(RepublisherError):
    """Base class for media download/upload failures."""


class DownloadError(TransferError):
    """Raised when every download strategy failed for a source video.

    Attributes:
        video_id: External platform video ID.
        attempts: ``(strategy_name, reason)`` pairs, in the order tried.
    """

    def __init__(
        self,
        message: str,
        video_id: str | None = None,
        attempts: list[tuple[str, str]] | None = None,
    ) -> None:
        self.video_id = video_id
        self.attempts = attempts or []
        super().__init__(message)


class UploadError(TransferError):
    """Raised when the destination platform did not accept an upload."""


class PublishRejectedError(RepublisherError):
    """Base class for requests rejected before any side effect happened."""


class NotFoundError(PublishRejectedError):
    """Raised when a video or user does not exist or belongs to someone else."""


class AlreadyPostedError(PublishRejectedError):
    """Raised when publishing a video that has already reached ``posted``."""


class QuotaExceededError(PublishRejectedError):
    """Raised when the user has no publish slots left today.

    Attributes:
        daily_limit: The limit that was reached.
    """

    def __init__(self, message: str, daily_limit: int | None = None) -> None:
        self.daily_limit = daily_limit
        super().__init__(message)


class VideoNotEligibleError(PublishRejectedError):
    """Raised when a video's current status does not allow the requested action."""


class InvalidStateTransitionError(RepublisherError):
    """Raised when assigning a Video status the state machine does not allow.

    Attributes:
        from_status: The current VideoStatus.
        to_status: The VideoStatus that was attempted.
    """

    def __init__(self, message: str, from_status: "VideoStatus", to_status: "VideoStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"
