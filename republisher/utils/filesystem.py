"""Filesystem helpers for the ephemeral download workspace.

Layout:
    {DOWNLOAD_ROOT}/{user_id}/{external_video_id}.mp4

Files live only for the duration of one publish unit. Helpers validate
identifiers so a crafted video ID cannot escape the download root.
"""

import re
from pathlib import Path

from republisher.config import get_download_root
from republisher.utils.logging import get_logger

log = get_logger(__name__)

VIDEO_EXTENSION = ".mp4"

# Leftovers yt-dlp may write next to the target file
PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp")

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def validate_identifier(identifier: str, name: str) -> None:
    """Validate an identifier used as a path component.

    Raises:
        ValueError: If identifier is empty or contains anything but
            alphanumerics, underscores and dashes.
    """
    if not identifier:
        raise ValueError(f"{name} cannot be empty")
    if not _ID_PATTERN.match(identifier):
        raise ValueError(
            f"Invalid {name}: '{identifier}'. "
            f"Only alphanumeric characters, underscores, and dashes are allowed."
        )


def _verify_path_in_root(path: Path, root: Path) -> None:
    resolved = path.resolve()
    root_resolved = root.resolve()
    if not resolved.is_relative_to(root_resolved):
        raise ValueError(
            f"Path traversal detected: resolved path '{resolved}' "
            f"is outside download root '{root_resolved}'"
        )


def get_download_dir(user_id: str, root: Path | None = None) -> Path:
    """Get (and create) the per-user download directory.

    Args:
        user_id: User identifier (UUID string).
        root: Download root override (defaults to DOWNLOAD_ROOT).

    Raises:
        ValueError: If user_id is invalid.
    """
    validate_identifier(user_id, "user_id")
    base = root or get_download_root()
    path = base / user_id
    _verify_path_in_root(path, base)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_download_path(user_id: str, external_video_id: str, root: Path | None = None) -> Path:
    """Get the local file path a source video is downloaded to.

    The parent directory is created; the file itself is not.
    """
    validate_identifier(external_video_id, "external_video_id")
    return get_download_dir(user_id, root) / f"{external_video_id}{VIDEO_EXTENSION}"


def partial_artifacts(path: Path) -> list[Path]:
    """List leftover partial-download files that belong to ``path``."""
    if not path.parent.exists():
        return []
    return [
        candidate
        for candidate in path.parent.glob(f"{path.stem}*")
        if candidate != path and any(str(candidate).endswith(s) for s in PARTIAL_SUFFIXES)
    ]


def remove_file(path: Path) -> bool:
    """Delete a file if present. Returns True when something was removed.

    Failures are logged rather than raised; a leftover file is never worth
    failing a publish for.
    """
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        log.warning("file_cleanup_failed", path=str(path), error=str(e))
        return False


def cleanup_download(path: Path) -> None:
    """Remove a downloaded file together with its partial artifacts."""
    for artifact in partial_artifacts(path):
        remove_file(artifact)
    remove_file(path)
