"""
Periodic runner for scheduled syncs using APScheduler.
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .errors import SyncInProgressError
from .sync import OrderSyncService, SyncResult

logger = logging.getLogger(__name__)

JOB_ID = "scheduled_sync"


class SyncScheduler:
    """
    Runs a scheduled sync every ``interval_minutes``.

    A tick is skipped while another sync (scheduled or manual) is running,
    and each run is cancelled after ``timeout_seconds``.
    """

    def __init__(
        self,
        service: OrderSyncService,
        interval_minutes: float = 60,
        timeout_seconds: float = 600,
    ):
        self.service = service
        self.interval_minutes = interval_minutes
        self.timeout_seconds = timeout_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_active(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    async def run_once(self) -> Optional[SyncResult]:
        """Run one scheduled sync with error handling. None if skipped or aborted."""
        if self.service.is_running:
            logger.info("Sync already running, skipping scheduled run")
            return None

        try:
            result = await asyncio.wait_for(self.service.run_scheduled(), self.timeout_seconds)
        except SyncInProgressError:
            logger.info("Sync already running, skipping scheduled run")
            return None
        except asyncio.TimeoutError:
            logger.error(f"Scheduled sync timed out after {self.timeout_seconds:.0f}s")
            return None
        except Exception:
            logger.exception("Unexpected error in scheduled sync")
            return None

        if not result.success:
            logger.error(f"Scheduled sync failed: {result.run.error_message}")
        return result

    def next_run_time(self) -> Optional[str]:
        if not self.is_active:
            return None
        job = self.scheduler.get_job(JOB_ID)
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return None

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self.is_active:
            logger.warning("Auto sync already started")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            name="Scheduled order sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Auto sync scheduled every {self.interval_minutes:.0f} minutes")

    async def stop(self) -> None:
        if not self.is_active:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Auto sync stopped")
