"""Background jobs: update checks, duplicate cleanup and running-status refresh."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.services.container_discovery import ContainerDiscovery
from fleetdock.services.settings_service import SettingsService
from fleetdock.services.update_checker import UpdateChecker
from fleetdock.utils.error_handling import log_and_continue

logger = logging.getLogger(__name__)


class SchedulerService:
    """Owns the APScheduler instance and the periodic fleet jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        discovery: ContainerDiscovery,
        checker: UpdateChecker,
    ) -> None:
        self.session_factory = session_factory
        self.discovery = discovery
        self.checker = checker
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._last_check: Optional[datetime] = None

    async def start(self) -> None:
        """Load job settings and start the scheduler."""
        try:
            async with self.session_factory() as db:
                check_cron = await SettingsService.get(
                    db, "container_update_check_cron", default="45 0 * * *"
                )
                check_enabled = await SettingsService.get_bool(
                    db, "container_update_check_enabled", default=True
                )
                cleanup_minutes = await SettingsService.get_int(
                    db, "duplicate_cleanup_interval_minutes", default=10
                )
                refresh_minutes = await SettingsService.get_int(
                    db, "running_status_refresh_interval_minutes", default=5
                )
        except OperationalError as e:
            logger.error(f"Database connection error during scheduler start: {e}")
            raise

        self.scheduler = AsyncIOScheduler()

        if check_enabled:
            try:
                trigger = CronTrigger.from_crontab(check_cron)
            except ValueError as e:
                logger.error(f"Invalid update check cron '{check_cron}': {e}")
                raise
            self.scheduler.add_job(
                self._run_update_check,
                trigger,
                id="container_update_check",
                name="Container Update Check",
                replace_existing=True,
                max_instances=1,  # Prevent overlapping runs
            )
        else:
            logger.info("Scheduled container update checks are disabled in settings")

        if cleanup_minutes > 0:
            self.scheduler.add_job(
                self._run_duplicate_cleanup,
                IntervalTrigger(minutes=cleanup_minutes),
                id="duplicate_cleanup",
                name="Duplicate Container Cleanup",
                replace_existing=True,
                max_instances=1,
            )

        if refresh_minutes > 0:
            self.scheduler.add_job(
                self._run_running_refresh,
                IntervalTrigger(minutes=refresh_minutes),
                id="running_status_refresh",
                name="Running Container Status Refresh",
                replace_existing=True,
                max_instances=1,
            )

        self.scheduler.start()
        logger.info(
            f"Background scheduler started (update check: "
            f"{check_cron if check_enabled else 'disabled'}, cleanup every {cleanup_minutes}m, "
            f"refresh every {refresh_minutes}m)"
        )
        job = self.scheduler.get_job("container_update_check")
        if job and job.next_run_time:
            logger.info(f"Next update check scheduled for: {job.next_run_time}")

    async def stop(self) -> None:
        if self.scheduler and self.scheduler.running:
            try:
                self.scheduler.shutdown(wait=False)
                # Give event loop a chance to process shutdown
                await asyncio.sleep(0)
                logger.info("Background scheduler stopped")
            except RuntimeError as e:
                logger.error(f"Scheduler shutdown error: {e}")
            self.scheduler = None

    def get_next_run_time(self) -> Optional[datetime]:
        if not self.scheduler:
            return None
        job = self.scheduler.get_job("container_update_check")
        return job.next_run_time if job else None

    @property
    def last_check(self) -> Optional[datetime]:
        return self._last_check

    async def _run_update_check(self) -> None:
        logger.info("Starting scheduled container update check")
        try:
            result = await self.checker.check_updates()
            self._last_check = datetime.now(timezone.utc)
            logger.info(
                f"Scheduled update check finished: {result['updated']} container(s) with updates"
            )
        except Exception as e:
            log_and_continue(logger, e, "Scheduled update check failed", log_level="error")

    async def _run_duplicate_cleanup(self) -> None:
        try:
            result = await self.discovery.cleanup_duplicates()
            if result["removed"]:
                logger.info(f"Scheduled cleanup removed {result['removed']} duplicate record(s)")
        except Exception as e:
            log_and_continue(logger, e, "Scheduled duplicate cleanup failed", log_level="error")

    async def _run_running_refresh(self) -> None:
        try:
            refreshed = await self.discovery.refresh_running_status_all_hosts()
            logger.debug(f"Refreshed running status of {refreshed} container(s)")
        except Exception as e:
            log_and_continue(logger, e, "Scheduled running-status refresh failed", log_level="error")
