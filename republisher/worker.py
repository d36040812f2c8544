"""Worker process entry point for the publish sweep.

Architecture Pattern:
    - Separate Process: sweeps never run inside the API process
    - Async Execution: scheduler, database and transfers share one event loop
    - Short Transactions: the orchestrator never holds a session across I/O
    - Graceful Shutdown: SIGTERM/SIGINT stop the scheduler and close connections

Usage:
    python -m republisher.worker
"""

import asyncio
import signal
import sys
from dataclasses import dataclass

from republisher.clients.google_oauth import GoogleOAuthClient
from republisher.config import (
    get_daily_video_limit,
    get_database_url,
    get_encryption_key,
    get_publish_cron,
)
from republisher.database import dispose_engine, get_session_factory
from republisher.scheduler import PublishScheduler
from republisher.services.publish_orchestrator import create_publish_orchestrator
from republisher.utils.encryption import get_encryption_service
from republisher.utils.logging import configure_logging, get_logger

log = get_logger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration loaded from environment variables."""

    database_url: str
    encryption_key: str
    daily_limit: int
    publish_cron: str


def get_config() -> WorkerConfig:
    """Load and validate worker configuration.

    Raises:
        ValueError: If required environment variables not set.
    """
    return WorkerConfig(
        database_url=get_database_url(),
        encryption_key=get_encryption_key(),
        daily_limit=get_daily_video_limit(),
        publish_cron=get_publish_cron(),
    )


def _redact_host(database_url: str) -> str:
    if "@" not in database_url:
        return "local"
    return database_url.split("@")[-1].split("/")[0]


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    """Start the publish scheduler and run until a shutdown signal arrives."""
    stop = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, _request_shutdown, stop, signum)
            installed.append(signum)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    orchestrator = create_publish_orchestrator(get_session_factory(), GoogleOAuthClient())
    scheduler = PublishScheduler(orchestrator)

    try:
        scheduler.start()
        log.info("worker_started", cron=scheduler.cron, daily_limit=orchestrator.daily_limit)
        await stop.wait()
    finally:
        scheduler.shutdown()
        await dispose_engine()
        for signum in installed:
            loop.remove_signal_handler(signum)
        log.info("worker_shutdown")


def _request_shutdown(stop: asyncio.Event, signum: int) -> None:
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    stop.set()


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: Successful shutdown (SIGTERM received)
        1: Fatal error (configuration invalid)
    """
    configure_logging()

    try:
        config = get_config()
        # Fails fast on a malformed key instead of on the first refresh
        get_encryption_service()
    except Exception as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)

    log.info(
        "worker_configuration_loaded",
        database_url_host=_redact_host(config.database_url),
        daily_limit=config.daily_limit,
        publish_cron=config.publish_cron,
    )

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    except Exception as e:
        log.error("worker_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)

    log.info("worker_exited_successfully")


if __name__ == "__main__":
    main()
