"""Recurring publish sweep.

APScheduler drives ``PublishOrchestrator.run_sweep`` on a crontab schedule
(``PUBLISH_CRON``, every 30 minutes by default). ``max_instances=1`` and
``coalesce=True`` keep a slow sweep from stacking up behind itself; the
orchestrator's own lock and per-video leases cover anything that slips past.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from republisher.config import get_publish_cron
from republisher.exceptions import ConfigurationError
from republisher.services.publish_orchestrator import PublishOrchestrator
from republisher.utils.logging import get_logger

log = get_logger(__name__)

PUBLISH_JOB_ID = "publish_sweep"


class PublishScheduler:
    """Owns the AsyncIOScheduler and the publish sweep job."""

    def __init__(self, orchestrator: PublishOrchestrator, cron: str | None = None) -> None:
        self.orchestrator = orchestrator
        self.cron = cron or get_publish_cron()
        self.scheduler = AsyncIOScheduler()

    def _trigger(self) -> CronTrigger:
        try:
            return CronTrigger.from_crontab(self.cron)
        except ValueError as e:
            raise ConfigurationError(f"Invalid PUBLISH_CRON expression: {self.cron!r}") from e

    async def run_publish_sweep(self) -> None:
        """Job body. Never raises, so one bad sweep cannot unschedule the job."""
        try:
            await self.orchestrator.run_sweep()
        except Exception as e:
            log.error("publish_sweep_failed", error=str(e), error_type=type(e).__name__)

    def start(self) -> None:
        """Register the sweep job and start the scheduler (needs a running loop).

        Raises:
            ConfigurationError: If the crontab expression is invalid.
        """
        self.scheduler.add_job(
            self.run_publish_sweep,
            self._trigger(),
            id=PUBLISH_JOB_ID,
            name="Publish due scheduled videos",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        log.info("publish_scheduler_started", cron=self.cron)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            log.info("publish_scheduler_stopped")
