"""OAuth token lifecycle for destination channels.

Resolves a usable access token for a user: decrypt, check expiry, refresh
through the provider when needed, then re-encrypt and persist the new token.

Usage:
    service = TokenService(session_factory, GoogleOAuthClient())
    access_token = await service.ensure_fresh_access_token(user_id)

Security Notes:
    - Tokens are decrypted only in memory and never logged
    - Short database transactions (read → close → refresh → point update)
    - Decryption or refresh failures become CredentialError; the user must
      re-authorize and nothing here retries automatically
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from republisher.clients.google_oauth import GoogleOAuthClient, OAuthRefreshError
from republisher.exceptions import CredentialError, NotFoundError, RefreshError
from republisher.models import User, as_utc
from republisher.utils.encryption import DecryptionError, get_encryption_service
from republisher.utils.logging import get_logger

log = get_logger(__name__)

# Refresh tokens that expire within this window instead of racing the upload
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


@dataclass(frozen=True)
class DestinationCredentials:
    """Decrypted tokens for one upload; held in memory only."""

    access_token: str
    refresh_token: str


class TokenService:
    """Keeps each user's destination access token usable.

    Example:
        >>> service = TokenService(session_factory, oauth_client)
        >>> token = await service.ensure_fresh_access_token(user_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        oauth_client: GoogleOAuthClient,
    ) -> None:
        self.session_factory = session_factory
        self.oauth_client = oauth_client

    async def ensure_fresh_access_token(self, user_id: uuid.UUID) -> str:
        """Return a valid access token, refreshing it when expired or near expiry."""
        credentials = await self.ensure_fresh_credentials(user_id)
        return credentials.access_token

    async def ensure_fresh_credentials(self, user_id: uuid.UUID) -> DestinationCredentials:
        """Return a valid access token together with the refresh token.

        The refresh token lets the upload client renew the access token
        itself when an upload outlives it.

        Args:
            user_id: User owning the destination channel.

        Returns:
            DestinationCredentials with plaintext tokens.

        Raises:
            NotFoundError: If the user does not exist.
            CredentialError: If tokens are missing or cannot be decrypted.
            RefreshError: If the provider rejects or fails the refresh.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    User.access_token_encrypted,
                    User.refresh_token_encrypted,
                    User.token_expiry,
                ).where(User.id == user_id)
            )
            row = result.one_or_none()

        if row is None:
            raise NotFoundError(f"User not found: {user_id}")

        access_blob, refresh_blob, token_expiry = row
        if not access_blob or not refresh_blob:
            log.warning("credential_missing", user_id=str(user_id))
            raise CredentialError("Destination channel is not connected", user_id=str(user_id))

        encryption_service = get_encryption_service()
        try:
            access_token = encryption_service.decrypt(access_blob, user_id=str(user_id))
        except DecryptionError as e:
            log.error("credential_decrypt_failed", user_id=str(user_id), token_type="access")
            raise CredentialError(
                "Stored access token cannot be decrypted; re-authorization required",
                user_id=str(user_id),
            ) from e

        try:
            refresh_token = encryption_service.decrypt(refresh_blob, user_id=str(user_id))
        except DecryptionError as e:
            log.error("credential_decrypt_failed", user_id=str(user_id), token_type="refresh")
            raise CredentialError(
                "Stored refresh token cannot be decrypted; re-authorization required",
                user_id=str(user_id),
            ) from e

        expiry = as_utc(token_expiry)
        now = datetime.now(timezone.utc)
        if expiry is None or expiry > now + TOKEN_EXPIRY_SKEW:
            return DestinationCredentials(access_token, refresh_token)

        log.info("access_token_refresh_start", user_id=str(user_id))
        try:
            tokens = await self.oauth_client.refresh_access_token(refresh_token)
        except OAuthRefreshError as e:
            log.error(
                "access_token_refresh_failed",
                user_id=str(user_id),
                status_code=e.status_code,
                error_code=e.error_code,
            )
            raise RefreshError(
                "Access token refresh failed; re-authorization required",
                user_id=str(user_id),
            ) from e

        values = {
            "access_token_encrypted": encryption_service.encrypt(tokens.access_token),
            "token_expiry": tokens.expiry,
        }
        if tokens.refresh_token:
            values["refresh_token_encrypted"] = encryption_service.encrypt(tokens.refresh_token)

        async with self.session_factory() as session, session.begin():
            await session.execute(update(User).where(User.id == user_id).values(**values))

        log.info(
            "access_token_refreshed",
            user_id=str(user_id),
            refresh_token_rotated=bool(tokens.refresh_token),
        )
        return DestinationCredentials(tokens.access_token, tokens.refresh_token or refresh_token)

    async def store_tokens(
        self,
        user_id: uuid.UUID,
        access_token: str,
        refresh_token: str,
        expiry: datetime | None,
    ) -> None:
        """Encrypt and persist freshly issued credentials for a user.

        Raises:
            NotFoundError: If the user does not exist.
        """
        encryption_service = get_encryption_service()
        values = {
            "access_token_encrypted": encryption_service.encrypt(access_token),
            "refresh_token_encrypted": encryption_service.encrypt(refresh_token),
            "token_expiry": expiry,
        }
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(User).where(User.id == user_id).values(**values)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"User not found: {user_id}")

        log.info("credential_stored", user_id=str(user_id))
