"""Business logic services for the republishing pipeline."""

from republisher.services.media_transfer import MediaTransferEngine
from republisher.services.publish_orchestrator import (
    PublishOrchestrator,
    PublishOutcome,
    SweepSummary,
)
from republisher.services.quota_tracker import QuotaStatus
from republisher.services.token_service import TokenService

__all__ = [
    "MediaTransferEngine",
    "PublishOrchestrator",
    "PublishOutcome",
    "QuotaStatus",
    "SweepSummary",
    "TokenService",
]
