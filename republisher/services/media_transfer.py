"""Media transfer: download a source video, upload it to the destination.

Downloads try an ordered list of strategies and keep the first one that
produces a non-empty file. Each attempt is a yt-dlp subprocess bounded by the
download timeout; a strategy that fails or times out leaves nothing behind
for the next one.

Usage:
    engine = MediaTransferEngine()
    path = await engine.download("dQw4w9WgXcQ", download_dir)
    new_id = await engine.upload(path, title, description, tags, access_token)
"""

import asyncio
import sys
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from republisher.clients.youtube import YouTubeUploadClient, YouTubeUploadError
from republisher.config import (
    get_download_timeout,
    get_upload_timeout,
    get_ytdlp_binary,
    get_ytdlp_cookie_browsers,
    get_ytdlp_cookies_file,
)
from republisher.exceptions import DownloadError, UploadError
from republisher.utils.cli_wrapper import CommandError, run_command
from republisher.utils.filesystem import (
    VIDEO_EXTENSION,
    cleanup_download,
    partial_artifacts,
    remove_file,
    validate_identifier,
)
from republisher.utils.logging import get_logger

log = get_logger(__name__)

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 5000
MAX_TAGS = 30

MERGED_FORMAT = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
PROGRESSIVE_FORMAT = "best[ext=mp4]/best"


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class DownloadStrategy(Protocol):
    """One way of fetching a source video to a local file."""

    name: str

    async def attempt(self, video_id: str, output_path: Path) -> None:
        """Write the video to ``output_path`` or raise."""
        ...


class YtDlpStrategy:
    """Plain yt-dlp: best mp4 video merged with best m4a audio."""

    name = "yt_dlp"

    def __init__(self, binary: str | None = None, timeout: int | None = None) -> None:
        self.binary = binary or get_ytdlp_binary()
        self.timeout = timeout or get_download_timeout()

    def build_command(self, video_id: str, output_path: Path, extra: Sequence[str] = ()) -> list[str]:
        return [
            self.binary,
            "-f",
            MERGED_FORMAT,
            "--merge-output-format",
            "mp4",
            "-o",
            str(output_path),
            "--no-playlist",
            "--no-warnings",
            "--no-progress",
            *extra,
            watch_url(video_id),
        ]

    async def attempt(self, video_id: str, output_path: Path) -> None:
        await run_command(self.build_command(video_id, output_path), timeout=self.timeout)


class YtDlpCookiesStrategy(YtDlpStrategy):
    """yt-dlp borrowing a saved browser session.

    Tries an exported cookies file first (when configured), then each browser's
    cookie store in turn. Succeeds on the first source that yields a file.
    All sources share one ``timeout`` budget, so the strategy as a whole is
    bounded like any other attempt.
    """

    name = "yt_dlp_cookies"

    def __init__(
        self,
        binary: str | None = None,
        timeout: int | None = None,
        cookies_file: str | None = None,
        browsers: Sequence[str] | None = None,
    ) -> None:
        super().__init__(binary, timeout)
        self.cookies_file = cookies_file if cookies_file is not None else get_ytdlp_cookies_file()
        self.browsers = list(browsers) if browsers is not None else get_ytdlp_cookie_browsers()

    def cookie_sources(self) -> list[tuple[str, list[str]]]:
        sources: list[tuple[str, list[str]]] = []
        if self.cookies_file:
            sources.append(("cookies_file", ["--cookies", self.cookies_file]))
        for browser in self.browsers:
            sources.append((browser, ["--cookies-from-browser", browser]))
        return sources

    async def attempt(self, video_id: str, output_path: Path) -> None:
        sources = self.cookie_sources()
        if not sources:
            raise DownloadError("No cookie sources configured", video_id=video_id)

        deadline = time.monotonic() + self.timeout
        last_error: Exception | None = None
        for source, extra in sources:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.info("cookie_sources_deadline_reached", video_id=video_id, source=source)
                raise asyncio.TimeoutError(
                    f"cookie sources exceeded timeout of {self.timeout}s"
                )
            try:
                await run_command(
                    self.build_command(video_id, output_path, extra),
                    timeout=remaining,
                )
            except (CommandError, asyncio.TimeoutError, OSError) as e:
                log.info("cookie_source_failed", video_id=video_id, source=source, error=str(e)[:200])
                cleanup_download(output_path)
                last_error = e
                continue
            if _has_content(output_path):
                return
            cleanup_download(output_path)
            last_error = DownloadError(f"{source} produced no file", video_id=video_id)

        raise DownloadError(
            f"All cookie sources failed: {last_error}", video_id=video_id
        ) from last_error


class ProgressiveStreamStrategy:
    """yt-dlp Python package with a single progressive stream and an alternate client.

    Runs the installed ``yt_dlp`` module under the current interpreter, so it
    works even when no ``yt-dlp`` executable is on PATH. No merge step is
    needed because the stream already carries audio and video.
    """

    name = "progressive_stream"

    def __init__(self, timeout: int | None = None, player_client: str = "android") -> None:
        self.timeout = timeout or get_download_timeout()
        self.player_client = player_client

    async def attempt(self, video_id: str, output_path: Path) -> None:
        command = [
            sys.executable,
            "-m",
            "yt_dlp",
            "-f",
            PROGRESSIVE_FORMAT,
            "--extractor-args",
            f"youtube:player_client={self.player_client}",
            "-o",
            str(output_path),
            "--no-playlist",
            "--no-warnings",
            "--no-progress",
            watch_url(video_id),
        ]
        await run_command(command, timeout=self.timeout)


def default_strategies() -> list[DownloadStrategy]:
    return [YtDlpStrategy(), YtDlpCookiesStrategy(), ProgressiveStreamStrategy()]


def _has_content(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


async def download_first_success(
    strategies: Sequence[DownloadStrategy],
    video_id: str,
    output_path: Path,
) -> Path:
    """Try each strategy in order and return ``output_path`` once one succeeds.

    Success means the strategy returned and left a non-empty file at
    ``output_path``. Leftovers of a failed attempt are removed before the next
    strategy runs.

    Raises:
        DownloadError: If every strategy failed. No file is left behind.
    """
    cleanup_download(output_path)

    attempts: list[tuple[str, str]] = []
    for strategy in strategies:
        log.info("download_attempt_start", video_id=video_id, strategy=strategy.name)
        try:
            await strategy.attempt(video_id, output_path)
        except asyncio.TimeoutError:
            reason = "timeout"
        except (CommandError, DownloadError, OSError) as e:
            reason = str(e)[:300] or type(e).__name__
        else:
            if _has_content(output_path):
                for artifact in partial_artifacts(output_path):
                    remove_file(artifact)
                log.info(
                    "download_succeeded",
                    video_id=video_id,
                    strategy=strategy.name,
                    size_bytes=output_path.stat().st_size,
                )
                return output_path
            reason = "no output file produced"

        log.warning("download_attempt_failed", video_id=video_id, strategy=strategy.name, reason=reason)
        attempts.append((strategy.name, reason))
        cleanup_download(output_path)

    raise DownloadError(
        f"All download strategies failed for {video_id}; "
        "the video may be restricted or unavailable",
        video_id=video_id,
        attempts=attempts,
    )


class MediaTransferEngine:
    """Downloads source videos and uploads them to destination channels.

    Example:
        >>> engine = MediaTransferEngine()
        >>> path = await engine.download("abc123", Path("/tmp/republisher/user"))
        >>> await engine.upload(path, "Title", "Desc", ["tag"], access_token)
        'XyZ987'
    """

    def __init__(
        self,
        strategies: Sequence[DownloadStrategy] | None = None,
        upload_client: YouTubeUploadClient | None = None,
        upload_timeout: int | None = None,
    ) -> None:
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.upload_client = upload_client or YouTubeUploadClient()
        self.upload_timeout = upload_timeout or get_upload_timeout()

    async def download(self, external_video_id: str, destination_dir: Path) -> Path:
        """Download a source video into ``destination_dir``.

        Raises:
            DownloadError: If every strategy failed.
        """
        try:
            validate_identifier(external_video_id, "external_video_id")
        except ValueError as e:
            raise DownloadError(str(e), video_id=external_video_id) from e

        destination_dir.mkdir(parents=True, exist_ok=True)
        output_path = destination_dir / f"{external_video_id}{VIDEO_EXTENSION}"
        return await download_first_success(self.strategies, external_video_id, output_path)

    async def upload(
        self,
        local_path: Path,
        title: str,
        description: str,
        tags: list[str],
        access_token: str,
        privacy_status: str = "public",
        refresh_token: str | None = None,
    ) -> str:
        """Upload a local file to the destination channel owning ``access_token``.

        Metadata is clipped to platform limits. The local file is deleted on
        success; on failure it is kept and the caller disposes of it.

        Returns:
            The destination platform's id for the new video.

        Raises:
            UploadError: Any upload failure, including missing files,
                platform rejection and timeout.
        """
        if not _has_content(local_path):
            raise UploadError(f"Video file not found or empty: {local_path.name}")

        size_mb = round(local_path.stat().st_size / (1024 * 1024), 2)
        log.info("upload_start", file=local_path.name, size_mb=size_mb, privacy_status=privacy_status)

        try:
            video_id = await self.upload_client.upload(
                local_path,
                title=(title or "")[:MAX_TITLE_LENGTH],
                description=(description or "")[:MAX_DESCRIPTION_LENGTH],
                tags=list(tags or [])[:MAX_TAGS],
                access_token=access_token,
                privacy_status=privacy_status,
                timeout=self.upload_timeout,
                refresh_token=refresh_token,
            )
        except YouTubeUploadError as e:
            log.error("upload_failed", file=local_path.name, error=str(e), status_code=e.status_code)
            raise UploadError(f"Failed to upload video: {e}") from e
        except Exception as e:
            log.error(
                "upload_failed_unexpected",
                file=local_path.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise UploadError(f"Failed to upload video: {type(e).__name__}: {e}") from e

        log.info("upload_succeeded", file=local_path.name, destination_video_id=video_id)
        if remove_file(local_path):
            log.debug("local_file_removed", file=local_path.name)
        return video_id

    def discard(self, path: Path | None) -> None:
        """Remove a local download and its partial artifacts. Safe to call twice."""
        if path is None:
            return
        cleanup_download(path)
