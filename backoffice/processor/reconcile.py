"""
Change-detecting reconciliation of collected orders into the database.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..db import ReconcileMode, SQLiteDatabase, StoredOrder, utcnow
from ..salesdrive import NormalizedOrder
from .errors import RecordReconciliationError

logger = logging.getLogger(__name__)

# Fields compared in smart mode. Anything else never triggers a write.
TRACKED_FIELDS = (
    "status",
    "status_text",
    "tracking_number",
    "quantity",
    "customer_name",
    "customer_phone",
    "delivery_address",
    "total_price",
    "shipping_method",
    "payment_method",
    "city",
    "provider",
    "items",
    "raw_data",
)


class RecordAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class RecordOutcome:
    """What happened to one order."""

    external_id: str
    action: RecordAction
    changed_fields: List[str] = field(default_factory=list)
    previous_values: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: RecordReconciliationError) -> "RecordOutcome":
        return cls(external_id=error.external_id, action=RecordAction.ERROR, error=str(error))


@dataclass
class ReconcileResult:
    """Aggregated outcomes of one reconcile call (or several, merged)."""

    outcomes: List[RecordOutcome] = field(default_factory=list)

    def _count(self, action: RecordAction) -> int:
        return sum(1 for o in self.outcomes if o.action == action)

    @property
    def created(self) -> int:
        return self._count(RecordAction.CREATED)

    @property
    def updated(self) -> int:
        return self._count(RecordAction.UPDATED)

    @property
    def skipped(self) -> int:
        return self._count(RecordAction.SKIPPED)

    @property
    def errors(self) -> int:
        return self._count(RecordAction.ERROR)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def merge(self, other: "ReconcileResult") -> None:
        self.outcomes.extend(other.outcomes)

    def summary(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def to_stored(order: NormalizedOrder, synced_at: datetime) -> StoredOrder:
    """Row state for a freshly synced order."""
    return StoredOrder(
        external_id=order.external_id,
        remote_id=order.remote_id,
        status=order.status,
        status_text=order.status_text,
        tracking_number=order.tracking_number,
        quantity=order.quantity,
        items=order.items,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        delivery_address=order.delivery_address,
        total_price=order.total_price,
        order_date=order.order_date,
        remote_updated_at=order.remote_updated_at,
        shipping_method=order.shipping_method,
        payment_method=order.payment_method,
        city=order.city,
        provider=order.provider,
        raw_data=order.raw_data,
        last_synced=synced_at,
        sync_status="success",
        created_at=synced_at,
        updated_at=synced_at,
    )


def _comparable(value: Any) -> Any:
    # Lists and dicts compare by canonical JSON so key order never matters
    if isinstance(value, list):
        value = [v.model_dump() if hasattr(v, "model_dump") else v for v in value]
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return value


def diff_order(stored: StoredOrder, incoming: StoredOrder) -> Dict[str, Any]:
    """Previous values of every tracked field that differs."""
    changes: Dict[str, Any] = {}
    for name in TRACKED_FIELDS:
        old = getattr(stored, name)
        if _comparable(old) != _comparable(getattr(incoming, name)):
            changes[name] = old
    return changes


class OrderReconciler:
    """
    Merges normalized orders into the database.

    Smart mode writes only orders whose tracked fields changed. Force
    mode writes every order. A failing order is reported in its outcome
    and never stops the rest of the batch.
    """

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    async def reconcile(
        self,
        orders: Sequence[NormalizedOrder],
        mode: ReconcileMode = ReconcileMode.SMART,
    ) -> ReconcileResult:
        if not orders:
            return ReconcileResult()

        now = utcnow()
        result = ReconcileResult()
        prepared: List[StoredOrder] = []

        for order in orders:
            try:
                if not order.external_id:
                    raise RecordReconciliationError("", "order has no external id")
                prepared.append(to_stored(order, now))
            except RecordReconciliationError as e:
                result.outcomes.append(RecordOutcome.failed(e))
            except Exception as e:
                logger.warning(f"Cannot prepare order {order.external_id}: {e}")
                result.outcomes.append(RecordOutcome.failed(
                    RecordReconciliationError(order.external_id, str(e))
                ))

        if mode == ReconcileMode.FORCE:
            result.merge(await self._reconcile_force(prepared))
        else:
            result.merge(await self._reconcile_smart(prepared))

        logger.info(
            f"Reconciled {result.total} orders ({mode.value}): "
            f"{result.created} created, {result.updated} updated, "
            f"{result.skipped} skipped, {result.errors} errors"
        )
        return result

    @staticmethod
    def _collapse_duplicates(
        orders: Sequence[StoredOrder],
    ) -> Tuple[List[StoredOrder], List[RecordOutcome]]:
        """Keep the last occurrence of each external id."""
        last_index = {order.external_id: i for i, order in enumerate(orders)}
        unique: List[StoredOrder] = []
        duplicates: List[RecordOutcome] = []

        for i, order in enumerate(orders):
            if last_index[order.external_id] == i:
                unique.append(order)
            else:
                duplicates.append(RecordOutcome(
                    external_id=order.external_id, action=RecordAction.SKIPPED
                ))

        if duplicates:
            logger.warning(f"Skipped {len(duplicates)} duplicate orders in batch")
        return unique, duplicates

    async def _create_new(self, orders: List[StoredOrder]) -> List[RecordOutcome]:
        if not orders:
            return []

        try:
            await self.db.create_orders_batch(orders)
            return [RecordOutcome(external_id=o.external_id, action=RecordAction.CREATED) for o in orders]
        except Exception as e:
            logger.warning(f"Batch create of {len(orders)} orders failed ({e}), creating one by one")

        outcomes = []
        for order in orders:
            try:
                await self.db.create_order(order)
                outcomes.append(RecordOutcome(external_id=order.external_id, action=RecordAction.CREATED))
            except Exception as e:
                logger.error(f"Failed to create order {order.external_id}: {e}")
                outcomes.append(RecordOutcome.failed(RecordReconciliationError(order.external_id, str(e))))
        return outcomes

    async def _reconcile_smart(self, orders: List[StoredOrder]) -> ReconcileResult:
        result = ReconcileResult()
        unique, duplicates = self._collapse_duplicates(orders)
        result.outcomes.extend(duplicates)

        existing = await self.db.get_orders_by_external_ids(o.external_id for o in unique)

        new_orders: List[StoredOrder] = []
        updates: List[Tuple[StoredOrder, List[str]]] = []
        previous: Dict[str, Dict[str, Any]] = {}

        for order in unique:
            stored = existing.get(order.external_id)
            if stored is None:
                new_orders.append(order)
                continue

            changes = diff_order(stored, order)
            if not changes:
                result.outcomes.append(RecordOutcome(
                    external_id=order.external_id, action=RecordAction.SKIPPED
                ))
                continue

            logger.debug(f"Order {order.external_id} changed: {', '.join(changes)}")
            updates.append((order, list(changes)))
            previous[order.external_id] = changes

        result.outcomes.extend(await self._create_new(new_orders))

        if updates:
            written = await self.db.update_orders_batch_smart(updates)
            for order, changed in updates:
                error = written.errors.get(order.external_id)
                if error:
                    result.outcomes.append(RecordOutcome.failed(
                        RecordReconciliationError(order.external_id, error)
                    ))
                else:
                    result.outcomes.append(RecordOutcome(
                        external_id=order.external_id,
                        action=RecordAction.UPDATED,
                        changed_fields=changed,
                        previous_values=previous[order.external_id],
                    ))

        return result

    async def classify(self, orders: Sequence[NormalizedOrder]) -> ReconcileResult:
        """What smart mode would do with ``orders``, without writing anything."""
        result = ReconcileResult()
        now = utcnow()
        prepared = [to_stored(o, now) for o in orders if o.external_id]
        unique, duplicates = self._collapse_duplicates(prepared)
        result.outcomes.extend(duplicates)

        existing = await self.db.get_orders_by_external_ids(o.external_id for o in unique)
        for order in unique:
            stored = existing.get(order.external_id)
            if stored is None:
                result.outcomes.append(RecordOutcome(external_id=order.external_id, action=RecordAction.CREATED))
                continue
            changes = diff_order(stored, order)
            result.outcomes.append(RecordOutcome(
                external_id=order.external_id,
                action=RecordAction.UPDATED if changes else RecordAction.SKIPPED,
                changed_fields=list(changes),
            ))
        return result

    async def _reconcile_force(self, orders: List[StoredOrder]) -> ReconcileResult:
        result = ReconcileResult()
        if not orders:
            return result

        written = await self.db.force_update_orders_batch(orders)
        created = list(written.created)
        updated = list(written.updated)

        # Walk the input in order so repeated ids map to the right outcome
        for order in orders:
            external_id = order.external_id
            if external_id in written.errors and external_id not in created and external_id not in updated:
                result.outcomes.append(RecordOutcome.failed(
                    RecordReconciliationError(external_id, written.errors[external_id])
                ))
            elif external_id in created:
                created.remove(external_id)
                result.outcomes.append(RecordOutcome(external_id=external_id, action=RecordAction.CREATED))
            elif external_id in updated:
                updated.remove(external_id)
                result.outcomes.append(RecordOutcome(external_id=external_id, action=RecordAction.UPDATED))
            else:
                result.outcomes.append(RecordOutcome.failed(
                    RecordReconciliationError(external_id, written.errors.get(external_id, "not written"))
                ))

        return result
