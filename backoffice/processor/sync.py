"""
Order sync orchestration.

One OrderSyncService per process. It picks the fetch window, collects
orders from SalesDrive, reconciles them into the database and writes
exactly one SyncRun per invocation.
"""

import asyncio
import inspect
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..db import (
    OrderFilter, ReconcileMode, SQLiteDatabase, SyncKind, SyncRun, SyncRunStatus,
    SyncWindow, utcnow
)
from ..salesdrive import (
    CollectionResult, InvalidPayloadError, NormalizedOrder, OrderCollector,
    QueryCache, RateLimiter, SalesDriveCircuitOpenError, SalesDriveClient,
    SalesDriveConfigError, SalesDriveError, normalize_order
)
from .errors import RecordReconciliationError, SyncError, SyncInProgressError
from .reconcile import OrderReconciler, ReconcileResult, RecordOutcome
from .settings import MAX_CHUNK_SIZE, SyncSettings
from .window import DateInput, creation_window, parse_manual_window, select_window

logger = logging.getLogger(__name__)

# Error messages kept in progress updates and run details
MAX_REPORTED_ERRORS = 50

CANCELLED_MESSAGE = "cancelled"


class SyncStage(str, Enum):
    FETCHING = "fetching"
    PROCESSING = "processing"
    SAVING = "saving"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ProgressUpdate:
    """Snapshot reported to the progress callback during manual runs."""

    stage: SyncStage
    message: str
    processed_count: int = 0
    total_count: int = 0
    current_chunk: int = 0
    total_chunks: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


ProgressCallback = Callable[[ProgressUpdate], Any]


@dataclass
class SyncResult:
    """Persisted run plus the per-order outcomes behind its counts."""

    run: SyncRun
    records: List[RecordOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.run.status != SyncRunStatus.FAILED


def _error_messages(outcomes: Sequence[RecordOutcome]) -> List[str]:
    return [o.error for o in outcomes if o.error][:MAX_REPORTED_ERRORS]


def _collection_details(collection: CollectionResult) -> Dict[str, Any]:
    return {
        "reported_total": collection.total,
        "pages_fetched": collection.pages_fetched,
        "total_pages": collection.total_pages,
        "failed_pages": collection.failed_pages,
        "truncated": collection.truncated,
    }


class OrderSyncService:
    """
    Drives scheduled and manual syncs.

    Scheduled and manual runs share one lock; a second request while a
    sync is running raises SyncInProgressError without touching anything.
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        client: SalesDriveClient,
        cache: Optional[QueryCache] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.db = db
        self.client = client
        self.cache = cache
        self.reconciler = OrderReconciler(db)
        self.progress: Optional[ProgressUpdate] = None

        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # ===== Helpers =====

    def _collector(self, settings: SyncSettings) -> OrderCollector:
        return OrderCollector(
            self.client,
            cache=self.cache,
            page_size=settings.batch_size,
            concurrency_limit=settings.max_concurrent_pages,
            max_pages=settings.max_pages,
            sleep=self._sleep,
        )

    async def last_sync_time(self) -> Optional[datetime]:
        """Finish time of the last run that wrote data, else the newest synced order."""
        run = await self.db.get_last_sync_run()
        if run is not None:
            return run.finished_at

        order = await self.db.get_last_synced_order()
        return order.last_synced if order else None

    async def breaker_cooldown_until(self) -> Optional[datetime]:
        """
        End of the breaker cooldown left by the last scheduled run, if still pending.

        The rate limiter lives in memory, so a fresh process would otherwise
        hit the API again right after a run that tripped the breaker.
        """
        runs = await self.db.get_sync_runs(kind=SyncKind.SCHEDULED, limit=1)
        last = runs[0] if runs else None
        if last is None or last.status != SyncRunStatus.FAILED:
            return None
        if last.details.get("error_type") != SalesDriveCircuitOpenError.__name__:
            return None

        until = last.finished_at + timedelta(seconds=RateLimiter.COOLDOWN_SECONDS)
        return until if until > self._clock() else None

    @staticmethod
    def _normalize(payloads: Sequence[Dict[str, Any]]) -> Tuple[List[NormalizedOrder], List[RecordOutcome]]:
        orders: List[NormalizedOrder] = []
        failures: List[RecordOutcome] = []
        for raw in payloads:
            try:
                orders.append(normalize_order(raw))
            except InvalidPayloadError as e:
                failures.append(RecordOutcome.failed(RecordReconciliationError("", str(e))))
        return orders, failures

    async def _collect_with_fallback(
        self,
        collector: OrderCollector,
        filter_kind: OrderFilter,
        last_sync: Optional[datetime],
        now: datetime,
    ) -> Tuple[CollectionResult, SyncWindow, OrderFilter]:
        window = select_window(filter_kind, last_sync, now)
        try:
            return await collector.collect(window, filter_kind), window, filter_kind
        except (SalesDriveCircuitOpenError, SalesDriveConfigError):
            raise
        except SalesDriveError as e:
            if filter_kind != OrderFilter.UPDATE_AT:
                raise
            logger.warning(f"Collection by {filter_kind.value} failed ({e}), falling back to orderTime")

        window = creation_window(last_sync, now)
        return await collector.collect(window, OrderFilter.ORDER_TIME), window, OrderFilter.ORDER_TIME

    async def _cleanup_history(self) -> None:
        try:
            await self.db.cleanup_old_history()
        except Exception as e:
            logger.warning(f"History cleanup failed: {e}")

    async def _report(self, callback: Optional[ProgressCallback], update: ProgressUpdate) -> None:
        self.progress = update
        logger.debug(f"Progress [{update.stage.value}] {update.message}")
        if callback is None:
            return
        try:
            result = callback(update)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _build_run(
        self,
        kind: SyncKind,
        mode: ReconcileMode,
        started_at: datetime,
        started: float,
        status: SyncRunStatus,
        window: Optional[SyncWindow] = None,
        filter_kind: Optional[OrderFilter] = None,
        result: Optional[ReconcileResult] = None,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SyncRun:
        result = result or ReconcileResult()
        return SyncRun(
            kind=kind,
            window_start=window.start if window else None,
            window_end=window.end if window else None,
            filter_kind=filter_kind,
            mode=mode,
            total_orders=result.total,
            created_count=result.created,
            updated_count=result.updated,
            skipped_count=result.skipped,
            error_count=result.errors if error_message is None else max(result.errors, 1),
            duration_seconds=round(time.monotonic() - started, 3),
            status=status,
            error_message=error_message,
            details=details or {},
            started_at=started_at,
            finished_at=self._clock(),
        )

    async def _save_run(self, run: SyncRun) -> SyncRun:
        """Persist ``run``. A store failure is logged and the unsaved run returned."""
        try:
            return await self.db.create_sync_run(run)
        except Exception:
            logger.exception(f"Failed to record sync run {run.id} ({run.status.value})")
            return run

    def _require_client(self) -> None:
        if not self.client.is_configured:
            raise SalesDriveConfigError("SalesDrive API credentials not configured")

    # ===== Scheduled sync =====

    async def run_scheduled(self) -> SyncResult:
        """
        Incremental smart sync of the window since the last run.

        Failures are recorded in the returned run.

        Raises:
            SyncInProgressError: If another sync is running
        """
        if self._lock.locked():
            raise SyncInProgressError("A sync is already running")

        async with self._lock:
            return await self._run_scheduled()

    async def _run_scheduled(self) -> SyncResult:
        started_at = self._clock()
        started = time.monotonic()
        mode = ReconcileMode.SMART
        window: Optional[SyncWindow] = None
        filter_kind: Optional[OrderFilter] = None
        result = ReconcileResult()

        logger.info("Starting scheduled sync")

        try:
            self._require_client()
            settings = await SyncSettings.load(self.db)
            last_sync = await self.last_sync_time()

            collection, window, filter_kind = await self._collect_with_fallback(
                self._collector(settings), settings.filter_kind, last_sync, started_at
            )

            orders, failures = self._normalize(collection.orders)
            result.outcomes.extend(failures)
            result.merge(await self.reconciler.reconcile(orders, mode))
            await self._cleanup_history()

            status = SyncRunStatus.SUCCESS
            if result.errors or not collection.complete:
                status = SyncRunStatus.PARTIAL

            details = _collection_details(collection)
            details["filter_fallback"] = filter_kind != settings.filter_kind
            details["errors"] = _error_messages(result.outcomes)

            run = self._build_run(
                SyncKind.SCHEDULED, mode, started_at, started, status,
                window=window, filter_kind=filter_kind, result=result, details=details,
            )

        except asyncio.CancelledError:
            run = self._build_run(
                SyncKind.SCHEDULED, mode, started_at, started, SyncRunStatus.FAILED,
                window=window, filter_kind=filter_kind, error_message=CANCELLED_MESSAGE,
            )
            await self._save_run(run)
            logger.warning("Scheduled sync cancelled")
            raise

        except (SalesDriveError, SyncError) as e:
            logger.error(f"Scheduled sync failed: {e}")
            run = self._build_run(
                SyncKind.SCHEDULED, mode, started_at, started, SyncRunStatus.FAILED,
                window=window, filter_kind=filter_kind, result=result,
                error_message=str(e), details={"error_type": type(e).__name__},
            )

        except Exception as e:
            logger.exception("Unexpected error in scheduled sync")
            run = self._build_run(
                SyncKind.SCHEDULED, mode, started_at, started, SyncRunStatus.FAILED,
                window=window, filter_kind=filter_kind, result=result,
                error_message=f"Unexpected error: {e}", details={"error_type": type(e).__name__},
            )

        run = await self._save_run(run)
        logger.info(
            f"Scheduled sync {run.status.value}: {run.created_count} created, "
            f"{run.updated_count} updated, {run.skipped_count} skipped, "
            f"{run.error_count} errors in {run.duration_seconds:.1f}s"
        )
        return SyncResult(run=run, records=result.outcomes)

    # ===== Preview =====

    async def preview(self, start: DateInput, end: DateInput = None) -> Dict[str, Any]:
        """
        Dry run of a manual smart sync: what would be created, updated or skipped.

        Collections are served from the query cache when possible.

        Raises:
            InvalidSyncWindowError: If the window is invalid
            SalesDriveError: If orders could not be collected
        """
        window = parse_manual_window(start, end, self._clock())
        self._require_client()
        settings = await SyncSettings.load(self.db)

        collection = await self._collector(settings).collect_cached(window, OrderFilter.ORDER_TIME)
        orders, failures = self._normalize(collection.orders)
        plan = await self.reconciler.classify(orders)
        plan.outcomes.extend(failures)

        logger.info(f"Sync preview for {window}: {plan.summary()}")

        return {
            "window_start": window.start.isoformat(),
            "window_end": window.end.isoformat(),
            "total_from_salesdrive": len(collection.orders),
            "stats": {
                "new": plan.created,
                "update": plan.updated,
                "skip": plan.skipped,
                "errors": plan.errors,
            },
            "orders": [asdict(o) for o in plan.outcomes],
            **_collection_details(collection),
        }

    # ===== Manual sync =====

    async def run_manual(
        self,
        start: DateInput,
        end: DateInput = None,
        mode: ReconcileMode = ReconcileMode.FORCE,
        chunk_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        """
        Operator-driven sync of an explicit window.

        Orders are reconciled in sequential chunks of ``chunk_size``.
        Never raises for sync failures: the returned run is failed and
        ``records`` holds one error outcome instead.

        Raises:
            SyncInProgressError: If another sync is running
            asyncio.CancelledError: If the task is cancelled (a failed
                "cancelled" run is recorded first)
        """
        if self._lock.locked():
            raise SyncInProgressError("A sync is already running")

        async with self._lock:
            return await self._run_manual(start, end, mode, chunk_size, on_progress)

    async def _run_manual(
        self,
        start: DateInput,
        end: DateInput,
        mode: ReconcileMode,
        chunk_size: Optional[int],
        on_progress: Optional[ProgressCallback],
    ) -> SyncResult:
        started_at = self._clock()
        started = time.monotonic()
        window: Optional[SyncWindow] = None
        result = ReconcileResult()
        details: Dict[str, Any] = {}

        self.progress = None

        try:
            window = parse_manual_window(start, end, started_at)
            logger.info(f"Starting manual {mode.value} sync for {window}")

            self._require_client()
            settings = await SyncSettings.load(self.db)
            size = min(max(1, chunk_size or settings.chunk_size), MAX_CHUNK_SIZE)

            await self._report(on_progress, ProgressUpdate(
                stage=SyncStage.FETCHING,
                message=f"Fetching orders from {window.start.date()} to {window.end.date()}",
            ))

            collection = await self._collector(settings).collect(window, OrderFilter.ORDER_TIME)
            details.update(_collection_details(collection))

            orders, failures = self._normalize(collection.orders)
            result.outcomes.extend(failures)

            total = len(orders)
            total_chunks = math.ceil(total / size) if total else 0
            details["chunk_size"] = size
            details["chunks"] = total_chunks
            processed = 0

            for index in range(total_chunks):
                chunk = orders[index * size:(index + 1) * size]
                await self._report(on_progress, ProgressUpdate(
                    stage=SyncStage.PROCESSING,
                    message=f"Processing chunk {index + 1}/{total_chunks} ({len(chunk)} orders)",
                    processed_count=processed,
                    total_count=total,
                    current_chunk=index + 1,
                    total_chunks=total_chunks,
                    errors=_error_messages(result.outcomes),
                ))

                result.merge(await self.reconciler.reconcile(chunk, mode))
                processed += len(chunk)

                await self._report(on_progress, ProgressUpdate(
                    stage=SyncStage.SAVING,
                    message=f"Saved chunk {index + 1}/{total_chunks}",
                    processed_count=processed,
                    total_count=total,
                    current_chunk=index + 1,
                    total_chunks=total_chunks,
                    errors=_error_messages(result.outcomes),
                ))

            await self._cleanup_history()

            status = SyncRunStatus.SUCCESS
            if result.errors or not collection.complete:
                status = SyncRunStatus.PARTIAL
            details["errors"] = _error_messages(result.outcomes)

            run = self._build_run(
                SyncKind.MANUAL, mode, started_at, started, status,
                window=window, filter_kind=OrderFilter.ORDER_TIME, result=result, details=details,
            )

        except asyncio.CancelledError:
            details["processed_before_cancel"] = result.summary()
            run = self._build_run(
                SyncKind.MANUAL, mode, started_at, started, SyncRunStatus.FAILED,
                window=window, filter_kind=OrderFilter.ORDER_TIME,
                error_message=CANCELLED_MESSAGE, details=details,
            )
            await self._save_run(run)
            await self._report(on_progress, ProgressUpdate(stage=SyncStage.ERROR, message="Sync cancelled"))
            logger.warning("Manual sync cancelled")
            raise

        except Exception as e:
            if isinstance(e, (SalesDriveError, SyncError)):
                logger.error(f"Manual sync failed: {e}")
                message = str(e)
            else:
                logger.exception("Unexpected error in manual sync")
                message = f"Unexpected error: {e}"

            details["error_type"] = type(e).__name__
            details["processed_before_failure"] = result.summary()

            run = await self._save_run(self._build_run(
                SyncKind.MANUAL, mode, started_at, started, SyncRunStatus.FAILED,
                window=window, filter_kind=OrderFilter.ORDER_TIME if window else None,
                error_message=message, details=details,
            ))
            await self._report(on_progress, ProgressUpdate(
                stage=SyncStage.ERROR, message=message, errors=[message]
            ))
            return SyncResult(run=run, records=[RecordOutcome.failed(RecordReconciliationError("", message))])

        run = await self._save_run(run)
        await self._report(on_progress, ProgressUpdate(
            stage=SyncStage.COMPLETED,
            message=(
                f"Sync completed: {run.created_count} created, {run.updated_count} updated, "
                f"{run.skipped_count} skipped, {run.error_count} errors"
            ),
            processed_count=processed,
            total_count=total,
            current_chunk=total_chunks,
            total_chunks=total_chunks,
            errors=details["errors"],
        ))
        logger.info(f"Manual sync {run.status.value} in {run.duration_seconds:.1f}s")
        return SyncResult(run=run, records=result.outcomes)
