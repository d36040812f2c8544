"""Async wrapper for external command execution.

Downloads shell out to yt-dlp, which can run for minutes. Every external
command goes through ``run_command`` so the event loop is never blocked and
every invocation carries a wall-clock timeout.

Critical Pattern:
- Never call subprocess.run() directly from async code
- Non-blocking execution via asyncio.to_thread()
- Timeouts surface as asyncio.TimeoutError
- Non-zero exit codes surface as CommandError
"""

import asyncio
import os
import subprocess
from pathlib import Path

from republisher.utils.logging import get_logger

log = get_logger(__name__)

# Flags whose following value must never reach the logs
_SENSITIVE_FLAGS = ("--cookies", "--password", "--token", "--api-key", "--video-password")
_SENSITIVE_KEYS = ("cookie", "token", "secret", "password", "key")

MAX_LOGGED_OUTPUT = 500
MAX_LOGGED_ARG = 100


class CommandError(Exception):
    """Raised when an external command exits with a non-zero code.

    Attributes:
        program (str): Executable name (e.g., "yt-dlp")
        exit_code (int): Process exit code
        stderr (str): Captured stderr output
    """

    def __init__(self, program: str, exit_code: int, stderr: str) -> None:
        self.program: str = program
        self.exit_code: int = exit_code
        self.stderr: str = stderr
        super().__init__(f"{program} failed with exit code {exit_code}: {stderr[:MAX_LOGGED_OUTPUT]}")


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def sanitize_args(args: list[str]) -> list[str]:
    """Redact secret-bearing arguments and shorten long ones for logging."""
    sanitized: list[str] = []
    skip_next = False
    for arg in args:
        if skip_next:
            sanitized.append("***REDACTED***")
            skip_next = False
        elif arg.lower() in _SENSITIVE_FLAGS:
            sanitized.append(arg)
            skip_next = True
        elif arg.startswith("--") and "=" in arg and any(
            key in arg.lower() for key in _SENSITIVE_KEYS
        ):
            param, _ = arg.split("=", 1)
            sanitized.append(f"{param}=***REDACTED***")
        else:
            sanitized.append(_truncate(arg, MAX_LOGGED_ARG))
    return sanitized


async def run_command(
    command: list[str],
    timeout: float = 600,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run an external command without blocking the event loop.

    Args:
        command: Program followed by its arguments.
        timeout: Wall-clock timeout in seconds.
        env: Extra environment variables layered over the parent environment.

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        CommandError: If the command exits with a non-zero code
        asyncio.TimeoutError: If the command exceeds the timeout
        FileNotFoundError: If the program is not installed

    Example:
        >>> result = await run_command(
        ...     ["yt-dlp", "--no-playlist", "-o", "/tmp/x.mp4", "https://youtu.be/abc"],
        ...     timeout=600,
        ... )
    """
    if not command:
        raise ValueError("command must not be empty")

    program = Path(command[0]).name
    log.info(
        "command_start",
        program=program,
        args=sanitize_args(command[1:]),
        timeout=timeout,
    )

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    try:
        result = await asyncio.to_thread(
            subprocess.run,
            command,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            env=process_env,
        )
    except subprocess.TimeoutExpired as e:
        log.error("command_timeout", program=program, timeout=timeout)
        raise asyncio.TimeoutError(f"{program} exceeded timeout of {timeout}s") from e

    if result.returncode != 0:
        log.error(
            "command_error",
            program=program,
            exit_code=result.returncode,
            stderr=_truncate(result.stderr or "", MAX_LOGGED_OUTPUT),
        )
        raise CommandError(program, result.returncode, result.stderr or "")

    log.info(
        "command_success",
        program=program,
        stdout=_truncate(result.stdout or "", MAX_LOGGED_OUTPUT),
    )
    return result
