"""
APScheduler Engine - periodic sync and classification repair.

Two jobs are registered on a BackgroundScheduler:
- portfolio_sync: syncs EXCEL_DATA_URL for the default organization every
  SYNC_INTERVAL_MINUTES (skipped while another run holds the lease)
- classification_repair: rewrites stale classifications once a day
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED,
    EVENT_SCHEDULER_SHUTDOWN, EVENT_SCHEDULER_STARTED,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..common.config import SyncConfig
from .orchestrator import SyncOrchestrator
from .recalculation import RecalculationService


logger = logging.getLogger(__name__)

SYNC_JOB_ID = 'portfolio_sync'
REPAIR_JOB_ID = 'classification_repair'


class SyncScheduler:
    """
    Owns the APScheduler instance and the job bodies it runs.
    """

    def __init__(
        self,
        config: SyncConfig,
        orchestrator: SyncOrchestrator,
        recalculation: Optional[RecalculationService] = None,
        timezone: str = 'UTC'
    ):
        """
        Initialize scheduler.

        Args:
            config: Sync configuration (interval, repair hour, default organization)
            orchestrator: Runs the scheduled syncs
            recalculation: Runs the classification repair (orchestrator's when None)
            timezone: Scheduler timezone
        """
        self.config = config
        self.orchestrator = orchestrator
        self.recalculation = recalculation or orchestrator.recalculation
        self.timezone = timezone

        self._scheduler: Optional[BackgroundScheduler] = None
        self._running = False
        self._lock = threading.Lock()

    def initialize(self):
        """Configure APScheduler and register the jobs."""
        # Jobs are re-registered on every start, so nothing needs persisting
        self._scheduler = BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers=2)},
            job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 300},
            timezone=self.timezone,
        )
        self._scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        self._scheduler.add_listener(self._on_scheduler_event, EVENT_SCHEDULER_STARTED | EVENT_SCHEDULER_SHUTDOWN)

        self._scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=self.config.sync_interval_minutes),
            id=SYNC_JOB_ID,
            name='Portfolio sync',
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.run_repair_job,
            trigger=CronTrigger(hour=self.config.classification_repair_hour, minute=0),
            id=REPAIR_JOB_ID,
            name='Classification repair',
            replace_existing=True,
        )
        logger.info(
            f"Scheduler initialized: sync every {self.config.sync_interval_minutes} min, "
            f"classification repair daily at {self.config.classification_repair_hour:02d}:00"
        )

    def start(self):
        """Start the scheduler."""
        with self._lock:
            if self._running:
                logger.warning("Scheduler is already running")
                return
            if not self._scheduler:
                self.initialize()
            self._scheduler.start()
            self._running = True
        logger.info("Scheduler started successfully")

    def stop(self, wait: bool = True):
        """
        Stop the scheduler.

        Args:
            wait: Whether to wait for running jobs to complete
        """
        with self._lock:
            if not self._running:
                logger.warning("Scheduler is not running")
                return
            self._scheduler.shutdown(wait=wait)
            self._running = False
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ========================================================================
    # Job bodies
    # ========================================================================

    def run_sync_job(self):
        result = self.orchestrator.run_scheduled_sync(self.config.default_organization_id)
        if result is not None and not result.success:
            logger.error(f"Scheduled sync run {result.run_id} failed: {result.error_message}")

    def run_repair_job(self):
        summary = self.recalculation.repair_classifications()
        logger.info(f"Scheduled classification repair: {summary['updated']} of {summary['total']} updated")

    # ========================================================================
    # Events and status
    # ========================================================================

    def _on_job_event(self, event):
        """Handle APScheduler job events."""
        if event.code == EVENT_JOB_ERROR:
            logger.error(f"Job {event.job_id} error: {event.exception}")
        elif event.code == EVENT_JOB_MISSED:
            logger.warning(f"Job {event.job_id} missed its scheduled run time")
        elif event.code == EVENT_JOB_EXECUTED:
            logger.debug(f"Job {event.job_id} executed successfully")

    def _on_scheduler_event(self, event):
        """Handle APScheduler lifecycle events."""
        if event.code == EVENT_SCHEDULER_STARTED:
            logger.info("APScheduler started")
        elif event.code == EVENT_SCHEDULER_SHUTDOWN:
            logger.info("APScheduler shutdown")

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Get list of scheduled jobs."""
        if not self._scheduler:
            return []

        jobs = []
        for job in self._scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger),
            })
        return jobs

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'default_organization_id': self.config.default_organization_id,
            'source_configured': bool(self.config.excel_data_url),
            'jobs': self.get_jobs(),
        }
