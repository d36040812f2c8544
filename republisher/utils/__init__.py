"""Cross-cutting utilities for the republishing pipeline.

Utilities are pure functions or singletons without business logic.

Modules:
    encryption: AES-256-CBC encryption for OAuth tokens at rest.
    cli_wrapper: Non-blocking subprocess execution with timeouts.
    filesystem: Ephemeral download workspace helpers.
    alerts: Throttled Discord webhook alerts.
"""

from republisher.utils.encryption import (
    DecryptionError,
    EncryptionKeyMissingError,
    EncryptionService,
    get_encryption_service,
)

__all__ = [
    "DecryptionError",
    "EncryptionKeyMissingError",
    "EncryptionService",
    "get_encryption_service",
]
