"""Google OAuth 2.0 credentials for the destination channel.

Only the refresh-token grant is needed by the publish pipeline: the initial
authorization-code exchange happens in the web front-end, which hands the
resulting tokens to ``TokenService.store_tokens``. The grant itself is
performed by google-auth; this module maps its results and errors onto the
pipeline's types.

Usage:
    client = GoogleOAuthClient(client_id, client_secret)
    tokens = await client.refresh_access_token(refresh_token)
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials

from republisher.config import get_google_client_id, get_google_client_secret
from republisher.utils.logging import get_logger

log = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRES_IN_SECONDS = 3600


class OAuthRefreshError(Exception):
    """Raised when the token endpoint refuses or fails a refresh.

    Attributes:
        status_code: HTTP status returned by the provider, when known.
        error_code: OAuth ``error`` field, e.g. ``invalid_grant`` for revoked consent.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


@dataclass(frozen=True)
class OAuthTokens:
    """Result of a successful refresh.

    ``refresh_token`` is only set when the provider rotated it.
    """

    access_token: str
    expiry: datetime
    refresh_token: str | None = None


def build_credentials(
    access_token: str | None,
    refresh_token: str | None,
    client_id: str | None = None,
    client_secret: str | None = None,
) -> Credentials:
    """Refresh-capable google-auth credentials for the destination channel."""
    return Credentials(
        token=access_token,
        refresh_token=refresh_token,
        token_uri=GOOGLE_TOKEN_URL,
        client_id=client_id or get_google_client_id(),
        client_secret=client_secret or get_google_client_secret(),
    )


def _error_code(error: google_auth_exceptions.RefreshError) -> str | None:
    # google-auth passes the parsed token response as the second argument
    if len(error.args) > 1 and isinstance(error.args[1], dict):
        code = error.args[1].get("error")
        return code if isinstance(code, str) else None
    return None


class GoogleOAuthClient:
    """Refreshes access tokens through google-auth.

    One refresh attempt per call; retrying is the caller's decision.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> None:
        self.client_id = client_id or get_google_client_id()
        self.client_secret = client_secret or get_google_client_secret()

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Args:
            refresh_token: Plaintext refresh token.

        Returns:
            OAuthTokens with the new access token and its absolute expiry.

        Raises:
            OAuthRefreshError: When the provider refuses the grant, the
                endpoint is unreachable or no token comes back.
        """
        if not self.client_id or not self.client_secret:
            raise OAuthRefreshError("Google OAuth client credentials are not configured")

        credentials = build_credentials(
            None, refresh_token, self.client_id, self.client_secret
        )
        try:
            # google-auth is synchronous
            await asyncio.to_thread(credentials.refresh, GoogleRequest())
        except google_auth_exceptions.RefreshError as e:
            error_code = _error_code(e)
            log.warning("oauth_refresh_rejected", error_code=error_code)
            raise OAuthRefreshError(
                "Token refresh rejected by provider", error_code=error_code
            ) from e
        except google_auth_exceptions.TransportError as e:
            log.warning("oauth_refresh_transport_error", error_type=type(e).__name__)
            raise OAuthRefreshError(f"Token endpoint unreachable: {type(e).__name__}") from e

        if not credentials.token:
            raise OAuthRefreshError("Token endpoint returned an empty access token")

        # google-auth reports expiry as naive UTC
        if credentials.expiry is not None:
            expiry = credentials.expiry.replace(tzinfo=timezone.utc)
        else:
            expiry = datetime.now(timezone.utc) + timedelta(seconds=DEFAULT_EXPIRES_IN_SECONDS)

        rotated = credentials.refresh_token
        return OAuthTokens(
            access_token=credentials.token,
            expiry=expiry,
            refresh_token=rotated if rotated and rotated != refresh_token else None,
        )
