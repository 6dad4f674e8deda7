"""
Database package - SQLite only.
"""

from .models import (
    SyncKind, SyncRunStatus, ReconcileMode, OrderFilter, SyncWindow,
    OrderItem, StoredOrder, OrderHistoryEntry, SyncRun, BatchWriteResult,
    generate_uuid, utcnow
)
from .sqlite import SQLiteDatabase

__all__ = [
    "SQLiteDatabase",
    "SyncKind",
    "SyncRunStatus",
    "ReconcileMode",
    "OrderFilter",
    "SyncWindow",
    "OrderItem",
    "StoredOrder",
    "OrderHistoryEntry",
    "SyncRun",
    "BatchWriteResult",
    "generate_uuid",
    "utcnow",
]
