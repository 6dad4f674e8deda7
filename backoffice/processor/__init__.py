"""
Processor package for sync operations.
"""

from .errors import (
    SyncError,
    SyncInProgressError,
    InvalidSyncWindowError,
    RecordReconciliationError,
)
from .window import (
    creation_window,
    modified_window,
    select_window,
    parse_manual_window,
    subtract_months,
)
from .settings import SyncSettings, MAX_CHUNK_SIZE
from .reconcile import (
    OrderReconciler,
    ReconcileResult,
    RecordOutcome,
    RecordAction,
    TRACKED_FIELDS,
    diff_order,
)
from .sync import OrderSyncService, SyncResult, ProgressUpdate, SyncStage
from .runner import SyncScheduler

__all__ = [
    "SyncError",
    "SyncInProgressError",
    "InvalidSyncWindowError",
    "RecordReconciliationError",
    "creation_window",
    "modified_window",
    "select_window",
    "parse_manual_window",
    "subtract_months",
    "SyncSettings",
    "MAX_CHUNK_SIZE",
    "OrderReconciler",
    "ReconcileResult",
    "RecordOutcome",
    "RecordAction",
    "TRACKED_FIELDS",
    "diff_order",
    "OrderSyncService",
    "SyncResult",
    "ProgressUpdate",
    "SyncStage",
    "SyncScheduler",
]
