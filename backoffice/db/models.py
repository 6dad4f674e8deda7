"""
Pydantic models for database entities.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
import uuid


class SyncKind(str, Enum):
    """What triggered the sync."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class SyncRunStatus(str, Enum):
    """Outcome of a sync run."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ReconcileMode(str, Enum):
    """How collected orders are written to the store."""
    SMART = "smart"
    FORCE = "force"


class OrderFilter(str, Enum):
    """SalesDrive time field used to select orders."""
    ORDER_TIME = "orderTime"
    UPDATE_AT = "updateAt"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncWindow(BaseModel):
    """Half-open time range [start, end) fetched in one sync pass."""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    def __str__(self) -> str:
        return f"{self.start.isoformat()} -> {self.end.isoformat()}"


class OrderItem(BaseModel):
    """One line of an order."""
    name: str
    quantity: float = 0
    price: float = 0
    sku: str = ""


class StoredOrder(BaseModel):
    """An order as persisted in the local database."""
    external_id: str
    remote_id: Optional[int] = None
    status: str = ""
    status_text: str = ""
    tracking_number: str = ""
    quantity: float = 0
    items: List[OrderItem] = Field(default_factory=list)
    customer_name: str = ""
    customer_phone: str = ""
    delivery_address: str = ""
    total_price: float = 0
    order_date: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None
    shipping_method: str = ""
    payment_method: str = ""
    city: str = ""
    provider: str = ""
    raw_data: Dict[str, Any] = Field(default_factory=dict)
    last_synced: Optional[datetime] = None
    sync_status: str = "success"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OrderHistoryEntry(BaseModel):
    """A recorded status change of an order."""
    id: str = Field(default_factory=generate_uuid)
    external_id: str
    status: str
    status_text: str = ""
    source: str = "salesdrive"
    notes: Optional[str] = None
    changed_at: datetime = Field(default_factory=utcnow)


class SyncRun(BaseModel):
    """
    Immutable record of one orchestrator invocation.

    The finish time of the latest successful run drives the next
    scheduled window, so exactly one is written per invocation.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_uuid)
    kind: SyncKind
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    filter_kind: Optional[OrderFilter] = None
    mode: ReconcileMode = ReconcileMode.SMART

    # Statistics
    total_orders: int = 0
    created_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    error_count: int = 0

    duration_seconds: float = 0.0
    status: SyncRunStatus
    error_message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime = Field(default_factory=utcnow)


class BatchWriteResult(BaseModel):
    """Per-record result of a batched order write."""
    created: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)
