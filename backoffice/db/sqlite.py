"""
SQLite database implementation.
Orders, their status history, sync runs and settings in one file.
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import (
    BatchWriteResult, OrderFilter, OrderHistoryEntry, OrderItem, ReconcileMode,
    StoredOrder, SyncKind, SyncRun, SyncRunStatus, utcnow
)

logger = logging.getLogger(__name__)

HISTORY_RETENTION_DAYS = 30

# SQLite caps the number of bound parameters per statement
LOOKUP_CHUNK = 500

ORDER_COLUMNS = (
    "external_id", "remote_id", "status", "status_text", "tracking_number",
    "quantity", "items", "customer_name", "customer_phone", "delivery_address",
    "total_price", "order_date", "remote_updated_at", "shipping_method",
    "payment_method", "city", "provider", "raw_data", "last_synced",
    "sync_status", "created_at", "updated_at",
)

# Columns a smart update may touch
UPDATABLE_COLUMNS = frozenset(ORDER_COLUMNS) - {"external_id", "created_at"}


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _column_value(order: StoredOrder, column: str) -> Any:
    value = getattr(order, column)
    if column == "items":
        return json.dumps([item.model_dump() for item in value], ensure_ascii=False)
    if column == "raw_data":
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SQLiteDatabase:
    """SQLite database for all operations."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def initialize(self) -> None:
        """Create database tables."""
        conn = await self._get_connection()

        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS orders (
                external_id TEXT PRIMARY KEY,
                remote_id INTEGER,
                status TEXT NOT NULL DEFAULT '',
                status_text TEXT NOT NULL DEFAULT '',
                tracking_number TEXT NOT NULL DEFAULT '',
                quantity REAL NOT NULL DEFAULT 0,
                items TEXT NOT NULL DEFAULT '[]',
                customer_name TEXT NOT NULL DEFAULT '',
                customer_phone TEXT NOT NULL DEFAULT '',
                delivery_address TEXT NOT NULL DEFAULT '',
                total_price REAL NOT NULL DEFAULT 0,
                order_date TEXT,
                remote_updated_at TEXT,
                shipping_method TEXT NOT NULL DEFAULT '',
                payment_method TEXT NOT NULL DEFAULT '',
                city TEXT NOT NULL DEFAULT '',
                provider TEXT NOT NULL DEFAULT '',
                raw_data TEXT NOT NULL DEFAULT '{}',
                last_synced TEXT,
                sync_status TEXT NOT NULL DEFAULT 'success',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS order_history (
                id TEXT PRIMARY KEY,
                external_id TEXT NOT NULL,
                status TEXT NOT NULL,
                status_text TEXT NOT NULL DEFAULT '',
                source TEXT NOT NULL DEFAULT 'salesdrive',
                notes TEXT,
                changed_at TEXT NOT NULL,
                FOREIGN KEY (external_id) REFERENCES orders(external_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS sync_history (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                window_start TEXT,
                window_end TEXT,
                filter_kind TEXT,
                mode TEXT NOT NULL,
                total_orders INTEGER NOT NULL DEFAULT 0,
                created_count INTEGER NOT NULL DEFAULT 0,
                updated_count INTEGER NOT NULL DEFAULT 0,
                skipped_count INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                duration_seconds REAL NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                error_message TEXT,
                details TEXT NOT NULL DEFAULT '{}',
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_orders_last_synced ON orders(last_synced DESC);
            CREATE INDEX IF NOT EXISTS idx_order_history_external_id ON order_history(external_id);
            CREATE INDEX IF NOT EXISTS idx_order_history_changed_at ON order_history(changed_at);
            CREATE INDEX IF NOT EXISTS idx_sync_history_finished_at ON sync_history(finished_at DESC);
        """)
        await conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ===== Helper Methods =====

    def _row_to_order(self, row: aiosqlite.Row) -> StoredOrder:
        """Convert a database row to a StoredOrder model."""
        return StoredOrder(
            external_id=row["external_id"],
            remote_id=row["remote_id"],
            status=row["status"],
            status_text=row["status_text"],
            tracking_number=row["tracking_number"],
            quantity=row["quantity"],
            items=[OrderItem(**item) for item in json.loads(row["items"])],
            customer_name=row["customer_name"],
            customer_phone=row["customer_phone"],
            delivery_address=row["delivery_address"],
            total_price=row["total_price"],
            order_date=_parse_dt(row["order_date"]),
            remote_updated_at=_parse_dt(row["remote_updated_at"]),
            shipping_method=row["shipping_method"],
            payment_method=row["payment_method"],
            city=row["city"],
            provider=row["provider"],
            raw_data=json.loads(row["raw_data"]),
            last_synced=_parse_dt(row["last_synced"]),
            sync_status=row["sync_status"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    def _row_to_run(self, row: aiosqlite.Row) -> SyncRun:
        """Convert a database row to a SyncRun model."""
        return SyncRun(
            id=row["id"],
            kind=SyncKind(row["kind"]),
            window_start=_parse_dt(row["window_start"]),
            window_end=_parse_dt(row["window_end"]),
            filter_kind=OrderFilter(row["filter_kind"]) if row["filter_kind"] else None,
            mode=ReconcileMode(row["mode"]),
            total_orders=row["total_orders"],
            created_count=row["created_count"],
            updated_count=row["updated_count"],
            skipped_count=row["skipped_count"],
            error_count=row["error_count"],
            duration_seconds=row["duration_seconds"],
            status=SyncRunStatus(row["status"]),
            error_message=row["error_message"],
            details=json.loads(row["details"]),
            started_at=_parse_dt(row["started_at"]),
            finished_at=_parse_dt(row["finished_at"]),
        )

    async def _insert_history(
        self,
        conn: aiosqlite.Connection,
        external_id: str,
        status: str,
        status_text: str,
        notes: Optional[str] = None,
    ) -> None:
        entry = OrderHistoryEntry(
            external_id=external_id, status=status, status_text=status_text, notes=notes
        )
        await conn.execute(
            """
            INSERT INTO order_history (id, external_id, status, status_text, source, notes, changed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id, entry.external_id, entry.status, entry.status_text,
                entry.source, entry.notes, entry.changed_at.isoformat()
            )
        )

    # ===== Order Operations =====

    async def get_order(self, external_id: str) -> Optional[StoredOrder]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM orders WHERE external_id = ?", (external_id,))
        row = await cursor.fetchone()
        return self._row_to_order(row) if row else None

    async def count_orders(self) -> int:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT COUNT(*) AS n FROM orders")
        row = await cursor.fetchone()
        return row["n"]

    async def get_orders_by_external_ids(self, external_ids: Iterable[str]) -> Dict[str, StoredOrder]:
        """Bulk existence lookup keyed by external id."""
        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return {}

        conn = await self._get_connection()
        found: Dict[str, StoredOrder] = {}

        for i in range(0, len(ids), LOOKUP_CHUNK):
            chunk = ids[i:i + LOOKUP_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await conn.execute(
                f"SELECT * FROM orders WHERE external_id IN ({placeholders})", chunk
            )
            for row in await cursor.fetchall():
                order = self._row_to_order(row)
                found[order.external_id] = order

        return found

    async def create_order(self, order: StoredOrder) -> StoredOrder:
        conn = await self._get_connection()
        placeholders = ", ".join("?" for _ in ORDER_COLUMNS)
        try:
            await conn.execute(
                f"INSERT INTO orders ({', '.join(ORDER_COLUMNS)}) VALUES ({placeholders})",
                [_column_value(order, c) for c in ORDER_COLUMNS]
            )
            await conn.commit()
        except aiosqlite.Error:
            await conn.rollback()
            raise
        return order

    async def create_orders_batch(self, orders: Sequence[StoredOrder]) -> int:
        """
        Insert all orders in one transaction.

        Nothing is written if any insert fails; the error is re-raised.
        """
        if not orders:
            return 0

        conn = await self._get_connection()
        placeholders = ", ".join("?" for _ in ORDER_COLUMNS)
        try:
            await conn.executemany(
                f"INSERT INTO orders ({', '.join(ORDER_COLUMNS)}) VALUES ({placeholders})",
                [[_column_value(order, c) for c in ORDER_COLUMNS] for order in orders]
            )
            await conn.commit()
        except aiosqlite.Error:
            await conn.rollback()
            raise

        logger.info(f"Created {len(orders)} orders")
        return len(orders)

    async def update_orders_batch_smart(
        self,
        updates: Sequence[Tuple[StoredOrder, Sequence[str]]]
    ) -> BatchWriteResult:
        """
        Write only the changed columns of each order.

        Each update is (new order state, changed field names). A status
        change also appends a history row.
        """
        result = BatchWriteResult()
        if not updates:
            return result

        conn = await self._get_connection()

        for order, changed in updates:
            columns = [c for c in changed if c in UPDATABLE_COLUMNS]
            columns += [c for c in ("last_synced", "sync_status", "updated_at") if c not in columns]

            values = [_column_value(order, c) for c in columns]
            values.append(order.external_id)

            try:
                cursor = await conn.execute(
                    f"UPDATE orders SET {', '.join(f'{c} = ?' for c in columns)} WHERE external_id = ?",
                    values
                )
                if cursor.rowcount == 0:
                    result.errors[order.external_id] = "Order not found"
                    continue

                if "status" in changed:
                    await self._insert_history(
                        conn, order.external_id, order.status, order.status_text,
                        notes="Status updated by sync"
                    )
                result.updated.append(order.external_id)
            except aiosqlite.Error as e:
                logger.error(f"Failed to update order {order.external_id}: {e}")
                result.errors[order.external_id] = str(e)

        await conn.commit()
        return result

    async def force_update_orders_batch(self, orders: Sequence[StoredOrder]) -> BatchWriteResult:
        """Create or fully replace every order."""
        result = BatchWriteResult()
        if not orders:
            return result

        existing = await self.get_orders_by_external_ids(o.external_id for o in orders)
        conn = await self._get_connection()

        placeholders = ", ".join("?" for _ in ORDER_COLUMNS)
        assignments = ", ".join(
            f"{c} = excluded.{c}" for c in ORDER_COLUMNS if c in UPDATABLE_COLUMNS
        )
        query = (
            f"INSERT INTO orders ({', '.join(ORDER_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(external_id) DO UPDATE SET {assignments}"
        )

        for order in orders:
            previous = existing.get(order.external_id)
            try:
                await conn.execute(query, [_column_value(order, c) for c in ORDER_COLUMNS])

                if previous is None:
                    result.created.append(order.external_id)
                else:
                    if previous.status != order.status:
                        await self._insert_history(
                            conn, order.external_id, order.status, order.status_text,
                            notes="Status updated by forced sync"
                        )
                    result.updated.append(order.external_id)
                existing[order.external_id] = order
            except aiosqlite.Error as e:
                logger.error(f"Failed to write order {order.external_id}: {e}")
                result.errors[order.external_id] = str(e)

        await conn.commit()
        return result

    async def get_last_synced_order(self) -> Optional[StoredOrder]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM orders WHERE last_synced IS NOT NULL ORDER BY last_synced DESC LIMIT 1"
        )
        row = await cursor.fetchone()
        return self._row_to_order(row) if row else None

    # ===== Order History Operations =====

    async def get_order_history(self, external_id: str) -> List[OrderHistoryEntry]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM order_history WHERE external_id = ? ORDER BY changed_at",
            (external_id,)
        )
        rows = await cursor.fetchall()
        return [
            OrderHistoryEntry(
                id=row["id"],
                external_id=row["external_id"],
                status=row["status"],
                status_text=row["status_text"],
                source=row["source"],
                notes=row["notes"],
                changed_at=_parse_dt(row["changed_at"]),
            )
            for row in rows
        ]

    async def cleanup_old_history(self, days: int = HISTORY_RETENTION_DAYS) -> int:
        cutoff = utcnow() - timedelta(days=days)
        conn = await self._get_connection()
        cursor = await conn.execute(
            "DELETE FROM order_history WHERE changed_at < ?",
            (cutoff.isoformat(),)
        )
        await conn.commit()

        if cursor.rowcount > 0:
            logger.info(f"Cleaned up {cursor.rowcount} old history records")
        return cursor.rowcount

    # ===== Sync History Operations =====

    async def create_sync_run(self, run: SyncRun) -> SyncRun:
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO sync_history (id, kind, window_start, window_end, filter_kind, mode,
                                      total_orders, created_count, updated_count, skipped_count,
                                      error_count, duration_seconds, status, error_message,
                                      details, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.kind.value,
                _dt(run.window_start),
                _dt(run.window_end),
                run.filter_kind.value if run.filter_kind else None,
                run.mode.value,
                run.total_orders,
                run.created_count,
                run.updated_count,
                run.skipped_count,
                run.error_count,
                run.duration_seconds,
                run.status.value,
                run.error_message,
                json.dumps(run.details, ensure_ascii=False, default=str),
                run.started_at.isoformat(),
                run.finished_at.isoformat(),
            )
        )
        await conn.commit()
        return run

    async def get_sync_runs(
        self,
        kind: Optional[SyncKind] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[SyncRun]:
        conn = await self._get_connection()

        query = "SELECT * FROM sync_history WHERE 1=1"
        params: List[Any] = []

        if kind:
            query += " AND kind = ?"
            params.append(kind.value)

        query += " ORDER BY finished_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    async def get_last_sync_run(self) -> Optional[SyncRun]:
        """Latest run that wrote data (success or partial)."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM sync_history WHERE status IN (?, ?) ORDER BY finished_at DESC LIMIT 1",
            (SyncRunStatus.SUCCESS.value, SyncRunStatus.PARTIAL.value)
        )
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    # ===== Settings Operations =====

    async def get_settings(self) -> Dict[str, Any]:
        """All stored settings keyed by dotted name."""
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT key, value FROM settings")
        rows = await cursor.fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    async def set_setting(self, key: str, value: Any) -> None:
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, json.dumps(value), utcnow().isoformat())
        )
        await conn.commit()
