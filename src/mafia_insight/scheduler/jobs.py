"""
APScheduler jobs for the background sync.

SchedulerHandle is built by the process entrypoint (or the API lifespan)
and passed to whoever needs to query or stop it; importing this module has
no side effects. Two jobs run in the event loop of the owning process:

  - scheduled_sync: SYNC_TYPE sync through the retry wrapper, on
    SYNC_CRON_SCHEDULE (UTC). Skipped while a sync is paused or running.
  - skipped_cleanup: daily purge of old COMPLETED skipped entities.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from mafia_insight.config import get_settings
from mafia_insight.models.sync import SyncType

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "scheduled_sync"
CLEANUP_JOB_ID = "skipped_cleanup"
CLEANUP_HOUR = 3


def describe_cron_expression(expression: str) -> str:
    """Human-readable description of a 5-field cron expression."""
    parts = expression.split()
    if len(parts) != 5:
        return "Invalid cron expression"

    minute, hour, day, month, weekday = parts
    if (minute, hour, day, month, weekday) == ("0", "0", "*", "*", "*"):
        return "Daily at midnight UTC"
    if (minute, hour, day, month, weekday) == ("0", "0", "1", "*", "*"):
        return "Monthly on the 1st at midnight UTC"
    if (minute, hour, day, month) == ("0", "0", "*", "*"):
        if weekday == "0":
            return "Weekly on Sunday at midnight UTC"
        if weekday == "1":
            return "Weekly on Monday at midnight UTC"
    if (day, month, weekday) == ("*", "*", "*") and hour != "*":
        if minute == "0":
            return f"Daily at {hour}:00 UTC"
        if minute != "*":
            return f"Daily at {hour}:{minute} UTC"
    return f"Custom schedule: {expression}"


def build_scheduler(handle: "SchedulerHandle") -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        handle: Owner whose schedule and job callbacks are used.

    Returns:
        Configured AsyncIOScheduler (not yet started).

    Raises:
        ValueError: if the cron expression is invalid.
    """
    scheduler = AsyncIOScheduler(timezone=timezone.utc)

    scheduler.add_job(
        handle.run_scheduled_sync,
        trigger=CronTrigger.from_crontab(handle.schedule, timezone=timezone.utc),
        id=SYNC_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        handle.run_cleanup,
        trigger="cron",
        hour=CLEANUP_HOUR,
        minute=0,
        timezone=timezone.utc,
        id=CLEANUP_JOB_ID,
        replace_existing=True,
    )

    return scheduler


class SchedulerHandle:
    """Owns the cron scheduler that drives the sync job."""

    def __init__(
        self,
        service,
        schedule: Optional[str] = None,
        sync_type: Optional[str] = None,
        retention_days: Optional[int] = None,
    ):
        settings = get_settings()
        self.service = service
        self.schedule = schedule or settings.sync_cron_schedule
        self.sync_type = SyncType(sync_type or settings.sync_type)
        self.retention_days = (
            settings.skipped_retention_days if retention_days is None else retention_days
        )
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Start the scheduler. Must be called from a running event loop; idempotent."""
        if self.is_running:
            logger.info("Scheduler already initialized")
            return
        self.scheduler = build_scheduler(self)
        self.scheduler.start()
        logger.info("Scheduler started (%s: %s)", self.schedule, describe_cron_expression(self.schedule))

    def stop(self) -> None:
        if self.scheduler is not None:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("Scheduler stopped")

    def update_schedule(self, schedule: str) -> None:
        """
        Switch to a new cron expression, restarting the scheduler if it runs.

        Raises:
            ValueError: if the expression is invalid; the old schedule stays.
        """
        CronTrigger.from_crontab(schedule, timezone=timezone.utc)
        was_running = self.is_running
        self.stop()
        self.schedule = schedule
        if was_running:
            self.initialize()
        logger.info("Sync schedule updated to %s", schedule)

    # ─── Jobs ─────────────────────────────────────────────────────────────────

    async def run_scheduled_sync(self) -> None:
        """Cron job body. Failures are logged, never raised into APScheduler."""
        tracker = self.service.status
        if tracker.pause_requested:
            logger.info("Scheduled sync skipped: sync is paused")
            return
        if tracker.is_running:
            logger.info("Scheduled sync skipped: a sync is already running")
            return

        logger.info("Scheduled %s sync starting at %s", self.sync_type.value, datetime.utcnow().isoformat())
        try:
            result = await self.service.run_sync_with_retry(self.sync_type)
        except Exception as exc:
            logger.error("Scheduled sync error: %s", exc)
            return

        if result.success:
            logger.info(
                "Scheduled sync completed: %d records in %dms",
                result.records_processed, result.duration,
            )
        else:
            logger.error("Scheduled sync failed: %s", ", ".join(result.errors))

    async def run_cleanup(self) -> None:
        try:
            removed = self.service.skipped.cleanup_completed_entities(self.retention_days)
        except Exception as exc:
            logger.error("Skipped-entity cleanup failed: %s", exc)
            return
        logger.info("Skipped-entity cleanup removed %d rows", removed)

    async def trigger_manual_sync(self, sync_type: Optional[str] = None) -> Dict[str, Any]:
        """Run a sync now, outside the retry wrapper; never raises."""
        sync_type = SyncType(sync_type or SyncType.INCREMENTAL)
        logger.info("Manually triggering %s sync", sync_type.value)
        try:
            result = await self.service.run_sync(sync_type)
        except Exception as exc:
            logger.error("Manual sync error: %s", exc)
            return {"success": False, "message": f"Manual sync error: {exc}"}

        if result.paused:
            message = f"Manual {sync_type.value} sync paused after {result.records_processed} records"
        else:
            message = (
                f"Manual {sync_type.value} sync completed successfully. "
                f"Processed {result.records_processed} records in {result.duration}ms"
            )
        return {"success": True, "message": message, "result": result.to_dict()}

    # ─── Introspection ────────────────────────────────────────────────────────

    def next_run(self) -> Optional[datetime]:
        if not self.is_running:
            return None
        job = self.scheduler.get_job(SYNC_JOB_ID)
        return job.next_run_time if job is not None else None

    def status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "next_run": self.next_run(),
            "schedule": self.schedule,
        }

    def schedule_info(self) -> Dict[str, Any]:
        status = self.status()
        return {
            "schedule": self.schedule,
            "description": describe_cron_expression(self.schedule),
            "next_run": status["next_run"],
            "is_running": status["is_running"],
        }

    def health(self) -> Dict[str, Any]:
        status = self.status()
        if not status["is_running"]:
            return {
                "healthy": False,
                "status": "STOPPED",
                "message": "Scheduler is not running",
                "next_run": None,
            }

        next_run = status["next_run"]
        if next_run is None:
            return {
                "healthy": False,
                "status": "NO_NEXT_RUN",
                "message": "Scheduler is running but no next run is scheduled",
                "next_run": None,
            }

        hours_until = (next_run - datetime.now(timezone.utc)).total_seconds() / 3600
        if hours_until < 0:
            return {
                "healthy": False,
                "status": "OVERDUE",
                "message": "Scheduler is overdue for its next run",
                "next_run": next_run,
            }

        return {
            "healthy": True,
            "status": "HEALTHY",
            "message": f"Next run in {round(hours_until, 2)} hours",
            "next_run": next_run,
        }


def build_scheduler_handle(service) -> SchedulerHandle:
    """Handle configured from settings (not started)."""
    return SchedulerHandle(service)
