"""
Automatic Twizzit sync scheduler.

Three cron jobs, one per cadence:
- hourly: every hour on the hour
- daily: 02:00
- weekly: Sunday 02:00

Each job loads the enabled, unlocked configurations for its cadence
(ordered by organization name) and runs them one at a time. A failing
configuration is logged and the batch moves on.

Scheduler: APScheduler (AsyncIOScheduler), timezone from SCHEDULER_TIMEZONE.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import ValidationError
from app.repositories.twizzit import SyncConfigRepository

logger = logging.getLogger(__name__)

SCHEDULED_CADENCES = ("hourly", "daily", "weekly")


def _default_service_factory(db: Session):
    from app.services.sync.service import TwizzitSyncService
    return TwizzitSyncService(db)


class TwizzitScheduler:
    """
    Runs due Twizzit syncs on their cadence.

    Configurations are processed sequentially to bound load on the
    Twizzit API.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        service_factory: Optional[Callable[[Session], Any]] = None,
        timezone: Optional[str] = None
    ):
        """
        Args:
            session_factory: Creates a database session per job and per run
            service_factory: Builds a TwizzitSyncService for a session
            timezone: Cron timezone (default SCHEDULER_TIMEZONE)
        """
        self.session_factory = session_factory
        self.service_factory = service_factory or _default_service_factory
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting Twizzit sync scheduler", extra={"timezone": self.timezone})

        self.scheduler = AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job
                'misfire_grace_time': 300  # 5 minutes grace for misfires
            }
        )

        self._schedule_hourly()
        self._schedule_daily()
        self._schedule_weekly()

        self.scheduler.start()
        self.running = True

        logger.info("Scheduler started with %d jobs", len(self.scheduler.get_jobs()))
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Scheduler stopped")

    def _schedule_hourly(self):
        """
        Schedule: hourly configurations.

        Frequency: every hour at :00
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=CronTrigger(minute=0, timezone=self.timezone),
            id='twizzit_sync_hourly',
            name='Twizzit hourly sync'
        )
        async def hourly_sync_job():
            await self._run_job("hourly")

        logger.info("Scheduled: Twizzit hourly sync (every hour at :00)")

    def _schedule_daily(self):
        """
        Schedule: daily configurations.

        Frequency: daily at 02:00
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=CronTrigger(hour=2, minute=0, timezone=self.timezone),
            id='twizzit_sync_daily',
            name='Twizzit daily sync'
        )
        async def daily_sync_job():
            await self._run_job("daily")

        logger.info("Scheduled: Twizzit daily sync (02:00)")

    def _schedule_weekly(self):
        """
        Schedule: weekly configurations.

        Frequency: Sundays at 02:00
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=CronTrigger(day_of_week='sun', hour=2, minute=0, timezone=self.timezone),
            id='twizzit_sync_weekly',
            name='Twizzit weekly sync'
        )
        async def weekly_sync_job():
            await self._run_job("weekly")

        logger.info("Scheduled: Twizzit weekly sync (Sunday 02:00)")

    async def _run_job(self, frequency: str):
        try:
            summary = await self.run_scheduled_syncs(frequency)
            logger.info(
                f"Scheduled {frequency} sync: {summary['succeeded']}/{summary['total']} succeeded",
                extra={"frequency": frequency, "failed": summary["failed"]}
            )
        except Exception as e:
            logger.error(f"Scheduled {frequency} sync failed: {e}", exc_info=True)

    def _due_credentials(self, frequency: str) -> List[str]:
        db = self.session_factory()
        try:
            return [c.credential_id for c in SyncConfigRepository(db).find_due(frequency)]
        finally:
            db.close()

    async def run_scheduled_syncs(self, frequency: str) -> Dict[str, Any]:
        """
        Run every due configuration for ``frequency``, one after another.

        Returns:
            Summary with total, succeeded, failed and per-credential results
        """
        credential_ids = self._due_credentials(frequency)
        summary: Dict[str, Any] = {
            "frequency": frequency,
            "total": len(credential_ids),
            "succeeded": 0,
            "failed": 0,
            "results": [],
        }
        if not credential_ids:
            logger.info(f"No {frequency} syncs due")
            return summary

        for credential_id in credential_ids:
            db = self.session_factory()
            try:
                service = self.service_factory(db)
                result = await service.run_configured_sync(credential_id)
                summary["succeeded"] += 1
                summary["results"].append(
                    {"credential_id": credential_id, "success": True, "result": result}
                )
            except Exception as e:
                summary["failed"] += 1
                summary["results"].append(
                    {"credential_id": credential_id, "success": False, "error": str(e)}
                )
                logger.error(
                    "Scheduled sync failed",
                    extra={"credential_id": credential_id, "frequency": frequency, "error": str(e)}
                )
            finally:
                db.close()

        return summary

    async def trigger(self, frequency: str) -> Dict[str, Any]:
        """Run a cadence's batch now (same work as the cron job)."""
        if frequency not in SCHEDULED_CADENCES:
            raise ValidationError(
                f"Invalid frequency '{frequency}'; expected one of {', '.join(SCHEDULED_CADENCES)}",
                errors=[{"field": "frequency", "message": "invalid cadence"}],
            )
        logger.info(f"Manually triggered {frequency} sync")
        return await self.run_scheduled_syncs(frequency)

    def get_status(self) -> Dict[str, Any]:
        jobs = []
        if self.scheduler is not None:
            for job in self.scheduler.get_jobs():
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "trigger": str(job.trigger),
                    "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                })
        return {
            "running": self.running,
            "timezone": self.timezone,
            "jobs": jobs,
        }

    def _log_scheduled_jobs(self):
        """Log all scheduled jobs for visibility."""
        for job in self.scheduler.get_jobs():
            logger.info(
                f"Job {job.name}",
                extra={"job_id": job.id, "next_run_time": job.next_run_time}
            )
