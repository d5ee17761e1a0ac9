#!/usr/bin/env python3
"""
Standalone runner for the Twizzit sync scheduler.

Runs the scheduler as a background service (systemd, supervisor, or
directly).

Usage:
    python run_scheduler.py                    # Run in foreground
    python run_scheduler.py --status           # Show due/locked configurations
    python run_scheduler.py --trigger daily    # Run the daily batch once and exit
    python run_scheduler.py --list-jobs        # Show job schedules
"""
import asyncio
import argparse
import json
import logging
import signal
import sys

from app.core.config import settings
from app.core.database import SessionLocal, init_db
from app.core.logging import configure_logging
from app.core.scheduler import SCHEDULED_CADENCES, TwizzitScheduler
from app.models import TwizzitSyncConfig

configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = logging.getLogger(__name__)


class SchedulerRunner:
    """Runner for the sync scheduler."""

    def __init__(self):
        self.scheduler: TwizzitScheduler = None
        self.shutdown = False

    async def start(self):
        """Start the scheduler and run until shutdown."""
        logger.info("Starting scheduler runner...")

        self.scheduler = TwizzitScheduler()
        await self.scheduler.start()

        logger.info("Scheduler is now running")

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._set_shutdown)

        while not self.shutdown:
            await asyncio.sleep(1)

        await self.scheduler.stop()
        logger.info("Scheduler runner stopped")

    def _set_shutdown(self):
        logger.info("Shutdown signal received")
        self.shutdown = True


def run_status_check() -> bool:
    """Print per-cadence configuration counts."""
    db = SessionLocal()
    try:
        configs = db.query(TwizzitSyncConfig).all()
    finally:
        db.close()

    print(f"Sync configurations: {len(configs)}")
    for cadence in ("manual",) + SCHEDULED_CADENCES:
        matching = [c for c in configs if c.frequency == cadence]
        enabled = [c for c in matching if c.auto_sync_enabled]
        running = [c for c in matching if c.sync_in_progress]
        print(f"  {cadence:<7} total={len(matching)} enabled={len(enabled)} in_progress={len(running)}")
    return True


async def run_trigger(frequency: str) -> bool:
    """Run one cadence's batch immediately."""
    scheduler = TwizzitScheduler()
    summary = await scheduler.trigger(frequency)
    print(json.dumps(summary, indent=2, default=str))
    return summary["failed"] == 0


async def list_jobs():
    """Print job schedules and next run times."""
    scheduler = TwizzitScheduler()
    await scheduler.start()
    try:
        status = scheduler.get_status()
    finally:
        await scheduler.stop()

    print(f"Timezone: {status['timezone']}")
    for job in status["jobs"]:
        print(f"{job['name']}")
        print(f"   ID: {job['id']}")
        print(f"   Schedule: {job['trigger']}")
        print(f"   Next run: {job['next_run_time'] or 'Pending'}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Run the Twizzit roster sync scheduler')

    parser.add_argument(
        '--status',
        action='store_true',
        help='Show configuration status and exit'
    )

    parser.add_argument(
        '--trigger',
        type=str,
        metavar='FREQUENCY',
        choices=SCHEDULED_CADENCES,
        help='Run the batch for one cadence (hourly, daily, weekly) and exit'
    )

    parser.add_argument(
        '--list-jobs',
        action='store_true',
        help='List scheduled jobs and exit'
    )

    args = parser.parse_args()

    init_db()

    if args.status:
        run_status_check()
        return 0

    if args.list_jobs:
        asyncio.run(list_jobs())
        return 0

    if args.trigger:
        return 0 if asyncio.run(run_trigger(args.trigger)) else 1

    if not settings.SCHEDULER_ENABLED:
        logger.warning("SCHEDULER_ENABLED is false; exiting")
        return 0

    runner = SchedulerRunner()
    try:
        asyncio.run(runner.start())
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down...")
    except Exception as e:
        logger.error(f"Scheduler error: {e}", exc_info=True)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
