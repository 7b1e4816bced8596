"""APScheduler integration for periodic full syncs and queue housekeeping."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from fieldsync.context import SyncContext
from fieldsync.schemas.schedule import ScheduleResponse

log = logging.getLogger(__name__)

SYNC_JOB_ID = "periodic_sync_job"
CLEANUP_JOB_ID = "mutation_cleanup_job"


class SyncJobScheduler:
    """Owns one AsyncIOScheduler bound to a sync context."""

    def __init__(self, context: SyncContext):
        self.context = context
        self.scheduler = AsyncIOScheduler()
        self.interval_minutes = context.settings.periodic_sync_minutes
        # Guard for overlapping runs ('skip' concurrency)
        self._sync_running = False

    async def scheduled_sync_job(self) -> None:
        """Execute scheduled full sync, skipping when the previous one is still active."""
        if self._sync_running:
            log.warning("Scheduled sync skipped: previous run still active")
            return

        self._sync_running = True
        log.info("Starting scheduled sync job")
        try:
            report = await self.context.sync_engine.sync_with_retry("scheduled")
            if report.skipped_reason:
                log.info(f"Scheduled sync skipped: {report.skipped_reason}")
            else:
                log.info(
                    f"Scheduled sync {report.correlation_id} finished: success={report.success}, "
                    f"pushed={report.pushed}, entities={len(report.results)}"
                )
        except Exception as e:
            log.error(f"Scheduled sync failed: {e}", exc_info=True)
        finally:
            self._sync_running = False

    async def cleanup_job(self) -> None:
        retention = self.context.settings.mutation_retention_days
        try:
            removed = self.context.queue.cleanup(older_than_days=retention)
            log.info(f"Mutation cleanup removed {removed} completed entries older than {retention} days")
        except Exception as e:
            log.error(f"Mutation cleanup failed: {e}", exc_info=True)
        pruned = self.context.triggers.prune_expired()
        if pruned:
            log.debug(f"Dropped {pruned} expired push trigger cooldown(s)")

    def reschedule_sync_job(self, interval_minutes: int, enabled: bool) -> None:
        """Dynamically reschedule the periodic sync without restarting the app."""
        if self.scheduler.get_job(SYNC_JOB_ID):
            self.scheduler.remove_job(SYNC_JOB_ID)
            log.info(f"Removed existing job: {SYNC_JOB_ID}")

        self.interval_minutes = interval_minutes if enabled else 0
        if enabled and interval_minutes > 0:
            self.scheduler.add_job(
                self.scheduled_sync_job,
                trigger=IntervalTrigger(minutes=interval_minutes),
                id=SYNC_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            log.info(f"Scheduled sync job updated: every {interval_minutes} minute(s)")
        else:
            log.info("Scheduled sync job disabled")

    def get_schedule(self) -> ScheduleResponse:
        job = self.scheduler.get_job(SYNC_JOB_ID)
        next_run: Optional[str] = None
        if job is not None and getattr(job, "next_run_time", None):
            next_run = job.next_run_time.isoformat()
        return ScheduleResponse(
            enabled=job is not None,
            interval_minutes=self.interval_minutes,
            next_run=next_run,
            running=self._sync_running,
        )

    def start(self) -> None:
        """Start the scheduler with the configured jobs."""
        self.reschedule_sync_job(self.interval_minutes, self.interval_minutes > 0)
        self.scheduler.add_job(
            self.cleanup_job,
            trigger=CronTrigger(hour=3, minute=0),
            id=CLEANUP_JOB_ID,
            replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
            log.info("APScheduler started successfully")

    def shutdown(self) -> None:
        """Shutdown the APScheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            log.info("APScheduler shut down successfully")
