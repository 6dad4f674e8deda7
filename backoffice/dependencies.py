"""
FastAPI dependency injection.
Process-wide services are built once on startup and shared by reference.
"""

import logging
from typing import Optional

from .config import settings
from .db import SQLiteDatabase
from .processor import OrderSyncService, SyncScheduler, SyncSettings
from .salesdrive import QueryCache, RateLimiter, SalesDriveClient

logger = logging.getLogger(__name__)


# Global instances (initialized on startup)
_db: Optional[SQLiteDatabase] = None
_limiter: Optional[RateLimiter] = None
_client: Optional[SalesDriveClient] = None
_cache: Optional[QueryCache] = None
_sync_service: Optional[OrderSyncService] = None
_scheduler: Optional[SyncScheduler] = None


async def init_dependencies():
    """Initialize global dependencies. Called on app startup."""
    global _db, _limiter, _client, _cache, _sync_service, _scheduler

    _db = SQLiteDatabase(settings.database_path)
    await _db.initialize()

    sync_settings = await SyncSettings.load(_db)

    # One limiter for the whole process: the SalesDrive budget is per account
    _limiter = RateLimiter(
        max_attempts=sync_settings.retry_attempts,
        retry_delay=sync_settings.retry_delay,
        base_delay=sync_settings.base_delay,
        max_delay=sync_settings.max_delay,
        jitter_range=sync_settings.jitter_range,
    )

    _client = SalesDriveClient(
        settings.salesdrive_api_url,
        settings.salesdrive_api_key,
        _limiter,
        form_key=settings.salesdrive_form_key,
    )

    _cache = QueryCache(
        max_size=sync_settings.cache_max_size,
        default_ttl=sync_settings.cache_ttl,
        cleanup_interval=sync_settings.cache_cleanup_interval,
    )
    _cache.start_cleanup()

    _sync_service = OrderSyncService(_db, _client, cache=_cache)

    _scheduler = SyncScheduler(
        _sync_service,
        interval_minutes=settings.sync_interval_minutes,
        timeout_seconds=settings.sync_timeout_seconds,
    )
    if settings.auto_sync_enabled:
        _scheduler.start()
    else:
        logger.info("Auto sync disabled")


async def close_dependencies():
    """Close global dependencies. Called on app shutdown."""
    global _db, _client, _cache, _scheduler
    if _scheduler:
        await _scheduler.stop()
    if _cache:
        await _cache.stop_cleanup()
    if _client:
        await _client.close()
    if _db:
        await _db.close()


def get_db() -> SQLiteDatabase:
    """Get the database instance."""
    if _db is None:
        raise RuntimeError("Database not initialized")
    return _db


def get_limiter() -> RateLimiter:
    if _limiter is None:
        raise RuntimeError("Rate limiter not initialized")
    return _limiter


def get_cache() -> QueryCache:
    if _cache is None:
        raise RuntimeError("Cache not initialized")
    return _cache


def get_sync_service() -> OrderSyncService:
    """Get the sync service instance."""
    if _sync_service is None:
        raise RuntimeError("Sync service not initialized")
    return _sync_service


def get_scheduler() -> SyncScheduler:
    if _scheduler is None:
        raise RuntimeError("Scheduler not initialized")
    return _scheduler
