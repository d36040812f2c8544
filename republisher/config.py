"""Configuration management for the republishing pipeline.

All configuration is loaded from environment variables through small getter
functions. Required values are cached with ``lru_cache`` so they stay fixed for
the lifetime of the process.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required)
    ENCRYPTION_KEY: 64 hex characters (32-byte AES key) for OAuth tokens (required)
    DAILY_VIDEO_LIMIT: Max videos a user may publish per day (default: 2)
    PUBLISH_CRON: Crontab expression for the publish sweep (default: every 30 min)

Usage:
    from republisher.config import get_daily_video_limit, get_database_url

    limit = get_daily_video_limit()
    db_url = get_database_url()  # Raises if DATABASE_URL not set
"""

import os
import tempfile
from functools import lru_cache
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)

DEFAULT_DAILY_VIDEO_LIMIT = 2
DEFAULT_PUBLISH_CRON = "*/30 * * * *"
DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 600  # 10 minutes per download attempt
DEFAULT_UPLOAD_TIMEOUT_SECONDS = 3600
DEFAULT_CLAIM_LEASE_SECONDS = 7200
CLAIM_LEASE_MARGIN_SECONDS = 600
# Download strategies tried per video, each bounded by DOWNLOAD_TIMEOUT_SECONDS
DOWNLOAD_STRATEGY_COUNT = 3
DEFAULT_PRIVACY_STATUS = "public"
DEFAULT_COOKIE_BROWSERS = ("chrome", "firefox", "edge", "brave")

VALID_PRIVACY_STATUSES = ("public", "unlisted", "private")


def _get_int(name: str, default: int, minimum: int = 1) -> int:
    """Read a positive integer from the environment, falling back on bad input."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_int_setting", name=name, value=raw, using_default=default)
        return default
    if value < minimum:
        log.warning("setting_below_minimum", name=name, value=value, minimum=minimum)
        return minimum
    return value


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


@lru_cache
def get_encryption_key() -> str:
    """Get the AES token encryption key from environment.

    Environment Variable:
        ENCRYPTION_KEY: 64 hex characters (32 bytes)

    Returns:
        Hex key string.

    Raises:
        ValueError: If ENCRYPTION_KEY not set.
    """
    key = os.getenv("ENCRYPTION_KEY")
    if not key:
        raise ValueError("ENCRYPTION_KEY environment variable is required")
    return key


@lru_cache
def get_daily_video_limit() -> int:
    """Get the per-user daily publish limit.

    Environment Variable:
        DAILY_VIDEO_LIMIT: Positive integer (default: 2)
    """
    return _get_int("DAILY_VIDEO_LIMIT", DEFAULT_DAILY_VIDEO_LIMIT)


def get_publish_cron() -> str:
    """Get the crontab expression that drives the publish sweep.

    Environment Variable:
        PUBLISH_CRON: Five-field crontab expression (default: "*/30 * * * *")
    """
    return os.getenv("PUBLISH_CRON") or DEFAULT_PUBLISH_CRON


def get_download_root() -> Path:
    """Get the base directory for ephemeral video downloads.

    Environment Variable:
        DOWNLOAD_ROOT: Directory path (default: <system temp>/republisher)
    """
    root = os.getenv("DOWNLOAD_ROOT")
    if root:
        return Path(root)
    return Path(tempfile.gettempdir()) / "republisher"


def get_download_timeout() -> int:
    """Get the wall-clock timeout in seconds for one download attempt."""
    return _get_int("DOWNLOAD_TIMEOUT_SECONDS", DEFAULT_DOWNLOAD_TIMEOUT_SECONDS)


def get_upload_timeout() -> int:
    """Get the overall timeout in seconds for one upload."""
    return _get_int("UPLOAD_TIMEOUT_SECONDS", DEFAULT_UPLOAD_TIMEOUT_SECONDS)


def get_claim_lease_seconds() -> int:
    """Get how long a publish claim stays valid before another worker may take it.

    The lease never drops below the worst case for one video (every download
    strategy timing out, then the full upload timeout) plus a margin; a smaller
    configured value is raised to that floor.

    Environment Variable:
        CLAIM_LEASE_SECONDS: Positive integer (default: 7200)
    """
    configured = _get_int("CLAIM_LEASE_SECONDS", DEFAULT_CLAIM_LEASE_SECONDS)
    floor = (
        DOWNLOAD_STRATEGY_COUNT * get_download_timeout()
        + get_upload_timeout()
        + CLAIM_LEASE_MARGIN_SECONDS
    )
    if configured < floor:
        log.warning("claim_lease_raised", configured=configured, lease_seconds=floor)
        return floor
    return configured


def get_publish_privacy_status() -> str:
    """Get the privacy status applied to republished videos.

    Environment Variable:
        PUBLISH_PRIVACY_STATUS: "public", "unlisted" or "private" (default: "public")
    """
    value = (os.getenv("PUBLISH_PRIVACY_STATUS") or DEFAULT_PRIVACY_STATUS).lower()
    if value not in VALID_PRIVACY_STATUSES:
        log.warning(
            "invalid_privacy_status",
            value=value,
            using_default=DEFAULT_PRIVACY_STATUS,
        )
        return DEFAULT_PRIVACY_STATUS
    return value


def get_ytdlp_binary() -> str:
    """Get the yt-dlp executable name or path (default: "yt-dlp")."""
    return os.getenv("YTDLP_BINARY") or "yt-dlp"


def get_ytdlp_cookies_file() -> str | None:
    """Get the path of an exported Netscape cookies file for yt-dlp, if any."""
    return os.getenv("YTDLP_COOKIES_FILE") or None


def get_ytdlp_cookie_browsers() -> list[str]:
    """Get browsers whose saved sessions yt-dlp may borrow cookies from.

    Environment Variable:
        YTDLP_COOKIE_BROWSERS: Comma-separated list (default: chrome,firefox,edge,brave)
    """
    raw = os.getenv("YTDLP_COOKIE_BROWSERS")
    if raw is None:
        return list(DEFAULT_COOKIE_BROWSERS)
    return [browser.strip() for browser in raw.split(",") if browser.strip()]


def get_google_client_id() -> str | None:
    """Get the Google OAuth client ID."""
    return os.getenv("GOOGLE_CLIENT_ID")


def get_google_client_secret() -> str | None:
    """Get the Google OAuth client secret."""
    return os.getenv("GOOGLE_CLIENT_SECRET")
