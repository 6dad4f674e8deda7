"""
Shared fixtures: temporary database, fake clocks and a fake SalesDrive client.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from backoffice.db import OrderFilter, SQLiteDatabase
from backoffice.salesdrive import OrderListPage


class FakeClock:
    """Monotonic seconds that only move when told to."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeSalesDriveClient:
    """
    In-memory stand-in for SalesDriveClient.list_orders.

    ``failures`` maps page number (or (filter, page)) to the exception
    raised for that page.
    """

    def __init__(
        self,
        orders: List[Dict[str, Any]],
        total: Optional[int] = None,
        failures: Optional[Dict[Any, Exception]] = None,
        configured: bool = True,
    ):
        self.orders = orders
        self.total = total
        self.failures = failures or {}
        self.is_configured = configured
        self.reachable = configured
        self.calls: List[tuple] = []

    async def list_orders(self, page, limit, window, filter_kind=OrderFilter.ORDER_TIME):
        self.calls.append((page, limit, filter_kind, window))

        failure = self.failures.get((filter_kind, page)) or self.failures.get(page)
        if failure is not None:
            raise failure

        chunk = self.orders[(page - 1) * limit:page * limit]
        total = self.total if self.total is not None else len(self.orders)
        return OrderListPage(page=page, orders=chunk, total=total)

    async def check_connection(self) -> bool:
        return self.reachable

    @property
    def pages_requested(self) -> List[int]:
        return [call[0] for call in self.calls]


def build_raw_order(order_id: int, **overrides: Any) -> Dict[str, Any]:
    """A SalesDrive-shaped order payload."""
    raw = {
        "id": order_id,
        "externalId": f"EXT-{order_id}",
        "sajt": 19,
        "statusId": 1,
        "products": [
            {"text": "Борщ", "amount": 2, "price": 150.0, "sku": "BR-01"},
            {"text": "Вареники", "amount": 1, "price": 120.0, "parameter": "VR-02"},
        ],
        "primaryContact": {
            "lName": "Шевченко",
            "fName": "Тарас",
            "mName": "Григорович",
            "phone": ["+380501112233"],
        },
        "ord_delivery_data": [
            {"trackingNumber": f"2045000{order_id}", "cityName": "Київ", "provider": "novaposhta"}
        ],
        "shipping_method": 9,
        "payment_method": 14,
        "shipping_address": "вул. Хрещатик, 1",
        "paymentAmount": 420.0,
        "kilTPorcij": 3,
        "orderTime": "2026-03-14 10:30:00",
        "updateAt": "2026-03-14 11:00:00",
    }
    raw.update(overrides)
    return raw


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def raw_order():
    return build_raw_order


@pytest.fixture
def fake_client():
    return FakeSalesDriveClient


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = SQLiteDatabase(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()
