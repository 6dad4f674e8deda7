"""
Sync trigger and monitoring API routes.
"""

import asyncio
import logging
from typing import Optional, Set

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ..db import ReconcileMode, SyncKind
from ..dependencies import get_cache, get_db, get_limiter, get_scheduler, get_sync_service
from ..processor import InvalidSyncWindowError, SyncInProgressError
from ..salesdrive import SalesDriveError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync")

# Background sync tasks, kept referenced until they finish
_tasks: Set[asyncio.Task] = set()
_manual_task: Optional[asyncio.Task] = None


class SyncResponse(BaseModel):
    message: str
    success: bool


class ManualSyncRequest(BaseModel):
    start_date: str
    end_date: Optional[str] = None
    mode: ReconcileMode = ReconcileMode.FORCE
    chunk_size: Optional[int] = Field(default=None, ge=1)


class PreviewRequest(BaseModel):
    start_date: str
    end_date: Optional[str] = None


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return task


async def _guarded(coro, what: str) -> None:
    try:
        await coro
    except SyncInProgressError:
        logger.info(f"{what} skipped: a sync is already running")
    except asyncio.CancelledError:
        logger.info(f"{what} cancelled")
        raise


@router.post("/run", response_model=SyncResponse)
async def run_scheduled_sync():
    """Trigger an incremental sync now."""
    service = get_sync_service()
    if service.is_running:
        raise HTTPException(status_code=409, detail="A sync is already running")

    _spawn(_guarded(service.run_scheduled(), "Incremental sync"))
    return SyncResponse(message="Incremental sync started", success=True)


@router.post("/manual", response_model=SyncResponse)
async def run_manual_sync(request: ManualSyncRequest):
    """Start a manual sync of an explicit date range."""
    global _manual_task

    service = get_sync_service()
    if service.is_running:
        raise HTTPException(status_code=409, detail="A sync is already running")

    _manual_task = _spawn(_guarded(
        service.run_manual(
            request.start_date,
            request.end_date,
            mode=request.mode,
            chunk_size=request.chunk_size,
        ),
        "Manual sync",
    ))

    period = request.start_date + (f" to {request.end_date}" if request.end_date else "")
    return SyncResponse(message=f"Manual {request.mode.value} sync started for {period}", success=True)


@router.post("/manual/cancel", response_model=SyncResponse)
async def cancel_manual_sync():
    """Cancel the running manual sync."""
    if _manual_task is None or _manual_task.done():
        raise HTTPException(status_code=404, detail="No manual sync is running")

    _manual_task.cancel()
    return SyncResponse(message="Manual sync cancellation requested", success=True)


@router.get("/progress")
async def get_sync_progress():
    """Current sync state and the latest manual sync progress."""
    service = get_sync_service()
    progress = service.progress
    return {
        "running": service.is_running,
        "auto_sync_active": get_scheduler().is_active,
        "next_auto_sync": get_scheduler().next_run_time(),
        "progress": progress.to_dict() if progress else None,
    }


@router.post("/preview")
async def preview_sync(request: PreviewRequest):
    """What a smart sync of the range would create, update and skip."""
    service = get_sync_service()
    try:
        return await service.preview(request.start_date, request.end_date)
    except InvalidSyncWindowError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SalesDriveError as e:
        logger.error(f"Sync preview failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/history")
async def get_sync_history(kind: Optional[SyncKind] = None, limit: int = 50, offset: int = 0):
    """Past sync runs, newest first."""
    db = get_db()
    runs = await db.get_sync_runs(kind=kind, limit=min(limit, 500), offset=offset)
    return {"runs": [run.model_dump(mode="json") for run in runs]}


@router.get("/cache")
async def get_cache_info():
    return get_cache().info()


@router.delete("/cache")
async def clear_cache():
    cleared = get_cache().invalidate_all()
    return {"cleared": cleared}


@router.get("/limiter")
async def get_limiter_state():
    return get_limiter().snapshot()


@router.post("/limiter/reset", response_model=SyncResponse)
async def reset_limiter():
    """Close the circuit breaker after an operator has checked the API."""
    get_limiter().reset()
    return SyncResponse(message="Rate limiter reset", success=True)
