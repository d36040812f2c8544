"""YouTube Data API v3 upload client.

Wraps ``videos.insert`` with a resumable ``MediaFileUpload``. The Google client
library is synchronous, so the chunk loop runs in a worker thread; an overall
deadline is enforced around it and a cancel flag stops the loop between
chunks once the deadline passes.

Credentials carry the refresh token and client config, so an upload that
outlives its access token renews it instead of failing on the next chunk.
"""

import asyncio
import threading
from pathlib import Path
from typing import Any

import google_auth_httplib2
import httplib2
from google.auth import exceptions as google_auth_exceptions
from googleapiclient import errors as googleapiclient_errors
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from republisher.clients.google_oauth import build_credentials
from republisher.utils.logging import get_logger

log = get_logger(__name__)

UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024
SOCKET_TIMEOUT_SECONDS = 120
PEOPLE_AND_BLOGS_CATEGORY = "22"


class YouTubeUploadError(Exception):
    """Raised when the YouTube API rejects or aborts an upload.

    Attributes:
        status_code: HTTP status of the API error, when there was one.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class _UploadCancelled(Exception):
    pass


def build_video_body(
    title: str,
    description: str,
    tags: list[str],
    privacy_status: str,
) -> dict[str, Any]:
    """Build the ``videos.insert`` request body."""
    return {
        "snippet": {
            "title": title,
            "description": description,
            "tags": tags,
            "categoryId": PEOPLE_AND_BLOGS_CATEGORY,
        },
        "status": {
            "privacyStatus": privacy_status,
            "selfDeclaredMadeForKids": False,
        },
    }


class YouTubeUploadClient:
    """Uploads a local file to the channel owning the given access token."""

    def __init__(
        self,
        socket_timeout: int = SOCKET_TIMEOUT_SECONDS,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> None:
        self.socket_timeout = socket_timeout
        self.client_id = client_id
        self.client_secret = client_secret

    def _build_service(self, access_token: str, refresh_token: str | None) -> Any:
        credentials = build_credentials(
            access_token, refresh_token, self.client_id, self.client_secret
        )
        http = google_auth_httplib2.AuthorizedHttp(
            credentials,
            http=httplib2.Http(timeout=self.socket_timeout),
        )
        return build("youtube", "v3", http=http, cache_discovery=False)

    def _upload_blocking(
        self,
        path: Path,
        body: dict[str, Any],
        access_token: str,
        refresh_token: str | None,
        cancel: threading.Event,
    ) -> str:
        youtube = self._build_service(access_token, refresh_token)
        request = youtube.videos().insert(
            part="snippet,status",
            body=body,
            media_body=MediaFileUpload(
                str(path),
                mimetype="video/*",
                chunksize=UPLOAD_CHUNK_SIZE,
                resumable=True,
            ),
        )

        response = None
        while response is None:
            if cancel.is_set():
                raise _UploadCancelled()
            status, response = request.next_chunk()
            if status:
                log.debug("youtube_upload_progress", progress=int(status.progress() * 100))

        video_id = response.get("id") if isinstance(response, dict) else None
        if not video_id:
            raise YouTubeUploadError("YouTube accepted the upload but returned no video id")
        return video_id

    async def upload(
        self,
        path: Path,
        title: str,
        description: str,
        tags: list[str],
        access_token: str,
        privacy_status: str = "public",
        timeout: float = 3600,
        refresh_token: str | None = None,
    ) -> str:
        """Upload ``path`` and return the new video's id.

        Raises:
            YouTubeUploadError: On API, authorization or transport errors and
                on timeout.
        """
        body = build_video_body(title, description, tags, privacy_status)
        cancel = threading.Event()

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self._upload_blocking, path, body, access_token, refresh_token, cancel
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            cancel.set()
            raise YouTubeUploadError(f"Upload exceeded timeout of {timeout}s") from e
        except _UploadCancelled as e:
            raise YouTubeUploadError("Upload cancelled") from e
        except HttpError as e:
            status_code = getattr(e.resp, "status", None)
            raise YouTubeUploadError(
                f"YouTube API error during upload (status {status_code})",
                status_code=status_code,
            ) from e
        except google_auth_exceptions.GoogleAuthError as e:
            log.warning("youtube_upload_auth_failed", error_type=type(e).__name__)
            raise YouTubeUploadError(
                f"Upload authorization failed: {type(e).__name__}"
            ) from e
        except googleapiclient_errors.Error as e:
            raise YouTubeUploadError(f"YouTube client error: {type(e).__name__}") from e
        except (OSError, httplib2.HttpLib2Error) as e:
            raise YouTubeUploadError(f"Upload transport error: {type(e).__name__}") from e
