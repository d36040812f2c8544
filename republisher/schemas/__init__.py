"""Pydantic schemas for validation and serialization."""

from republisher.schemas.video import (
    PublishResponse,
    QuotaResponse,
    ScheduleRequest,
    VideoResponse,
)

__all__ = [
    "PublishResponse",
    "QuotaResponse",
    "ScheduleRequest",
    "VideoResponse",
]
