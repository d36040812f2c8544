"""Pydantic schemas for the video publishing API.

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from republisher.models import VideoStatus


class ScheduleRequest(BaseModel):
    """Body of POST /api/v1/videos/{video_id}/schedule."""

    scheduled_at: datetime = Field(
        ...,
        description="When the video becomes due. Naive values are taken as UTC.",
        examples=["2024-05-01T18:00:00Z"],
    )

    @field_validator("scheduled_at")
    @classmethod
    def require_reasonable_year(cls, value: datetime) -> datetime:
        if value.year < 2000:
            raise ValueError("scheduled_at is not a plausible date")
        return value


class VideoResponse(BaseModel):
    """A video as returned by the API. Never includes claim lease fields."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_video_id: str
    title: str
    status: VideoStatus
    scheduled_at: datetime | None = None
    posted_at: datetime | None = None
    destination_channel_id: str | None = None
    destination_video_id: str | None = None
    last_error: str | None = None


class PublishResponse(BaseModel):
    """Result of a successful single-video publish."""

    video_id: UUID
    status: VideoStatus = VideoStatus.POSTED
    destination_video_id: str
    posted_at: datetime


class QuotaResponse(BaseModel):
    """Today's publish quota for the calling user."""

    model_config = ConfigDict(from_attributes=True)

    daily_limit: int = Field(..., ge=0)
    posted_today: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0)
    window_start: datetime
