#!/usr/bin/env python3
"""
Cron job script to run one incremental SalesDrive sync.
Add to crontab: 0 * * * * cd /path/to/app && /path/to/venv/bin/python scripts/run_sync.py

This runs the sync as a standalone script, not through the web server.
Set AUTO_SYNC_ENABLED=false for the web server when using cron instead.

The rate limiter and its circuit breaker live in memory and start closed
in every process. The cooldown is carried across cron runs through the
sync history instead: while the last scheduled run failed on an open
breaker less than RateLimiter.COOLDOWN_SECONDS ago, the run is skipped.
"""

import asyncio
import logging
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backoffice.config import settings
from backoffice.db import SQLiteDatabase
from backoffice.processor import OrderSyncService, SyncScheduler, SyncSettings
from backoffice.salesdrive import RateLimiter, SalesDriveClient

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


async def main():
    logger.info("Starting scheduled sync...")

    db = SQLiteDatabase(settings.database_path)
    await db.initialize()

    sync_settings = await SyncSettings.load(db)
    limiter = RateLimiter(
        max_attempts=sync_settings.retry_attempts,
        retry_delay=sync_settings.retry_delay,
        base_delay=sync_settings.base_delay,
        max_delay=sync_settings.max_delay,
        jitter_range=sync_settings.jitter_range,
    )
    client = SalesDriveClient(
        settings.salesdrive_api_url,
        settings.salesdrive_api_key,
        limiter,
        form_key=settings.salesdrive_form_key,
    )

    try:
        service = OrderSyncService(db, client)

        cooldown_until = await service.breaker_cooldown_until()
        if cooldown_until is not None:
            logger.warning(
                f"Circuit breaker cooldown until {cooldown_until.isoformat()}, skipping sync"
            )
            return

        scheduler = SyncScheduler(service, timeout_seconds=settings.sync_timeout_seconds)
        result = await scheduler.run_once()

        if result is None or not result.success:
            sys.exit(1)

        run = result.run
        logger.info(
            f"Sync {run.status.value}: {run.created_count} created, "
            f"{run.updated_count} updated, {run.skipped_count} skipped, "
            f"{run.error_count} errors"
        )

    finally:
        await client.close()
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
