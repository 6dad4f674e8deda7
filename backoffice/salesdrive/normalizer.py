"""
Normalization of raw SalesDrive order payloads.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..db.models import OrderItem
from .errors import InvalidPayloadError

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Невідомий"
UNKNOWN_PRODUCT = "Невідомий товар"

STATUS_LABELS: Dict[int, str] = {
    1: "Новий",
    2: "Підтверджено",
    3: "На відправку",
    4: "Відправлено",
    5: "Продаж",
    6: "Відмова",
    7: "Повернення",
    8: "Видалений",
    9: "На утриманні",
}

SHIPPING_METHOD_LABELS: Dict[int, str] = {
    9: "Нова Пошта",
    20: "Нова Пошта (адресна)",
    16: "Укрпошта",
    17: "Meest",
    10: "Самовивіз",
}

PAYMENT_METHOD_LABELS: Dict[int, str] = {
    14: "Plata by Mono",
    13: "LiqPay",
    12: "Післяплата",
    15: "Готівка",
    21: "Card",
    23: "Apple Pay",
    25: "Наложений платіж",
    27: "Пром-оплата",
    29: "Google Pay",
    30: "Credit",
}

# Site codes whose orders carry no usable external id of their own
SD_PREFIX = "SD"
SD_PREFIXED_SITES = {31, 38}


@dataclass
class NormalizedOrder:
    """Canonical order produced from one SalesDrive payload."""

    external_id: str
    remote_id: Optional[int]
    status: str
    status_text: str
    tracking_number: str
    quantity: float
    items: List[OrderItem]
    customer_name: str
    customer_phone: str
    delivery_address: str
    total_price: float
    order_date: Optional[datetime]
    remote_updated_at: Optional[datetime]
    shipping_method: str
    payment_method: str
    city: str
    provider: str
    raw_data: Dict[str, Any] = field(default_factory=dict)


def _lookup(table: Dict[int, str], code: Any) -> str:
    try:
        return table.get(int(code), UNKNOWN_LABEL)
    except (TypeError, ValueError):
        return UNKNOWN_LABEL


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_remote_datetime(value: Any) -> Optional[datetime]:
    """Parse SalesDrive's "YYYY-MM-DD HH:MM:SS" (or ISO) timestamps as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_external_id(raw: Dict[str, Any]) -> str:
    """
    Build the reconciliation key for a payload.

    Ids already prefixed with "SD" are kept. Orders from the SD sites
    (or without a site code) and orders without an externalId become
    "SD{id}". Everything else keeps its externalId.
    """
    external_id = raw.get("externalId")
    external_id = str(external_id) if external_id not in (None, "") else ""
    remote_id = raw.get("id")

    if external_id.startswith(SD_PREFIX):
        return external_id

    site = _to_int(raw.get("sajt"))
    needs_prefix = not site or site in SD_PREFIXED_SITES or not external_id

    if needs_prefix and remote_id:
        return f"{SD_PREFIX}{remote_id}"

    return external_id or (str(remote_id) if remote_id is not None else "")


def _parse_items(raw: Dict[str, Any]) -> List[OrderItem]:
    products = raw.get("products")
    if not isinstance(products, list):
        return []

    items = []
    for product in products:
        if not isinstance(product, dict):
            continue
        items.append(OrderItem(
            name=product.get("text") or UNKNOWN_PRODUCT,
            quantity=_to_float(product.get("amount")),
            price=_to_float(product.get("price")),
            sku=str(product.get("sku") or product.get("parameter") or ""),
        ))
    return items


def _parse_contact(raw: Dict[str, Any]) -> tuple:
    contact = raw.get("primaryContact")
    if not isinstance(contact, dict):
        return "", ""

    name_parts = [contact.get("lName"), contact.get("fName"), contact.get("mName")]
    name = " ".join(str(p) for p in name_parts if p).strip()

    phone = contact.get("phone")
    if isinstance(phone, list):
        phone = phone[0] if phone else ""
    return name, str(phone or "")


def calculate_quantity(declared: Any, items: List[OrderItem]) -> float:
    """Declared total when present and non-zero, otherwise the sum of items."""
    total = _to_float(declared)
    if total:
        return total
    return sum(item.quantity for item in items)


def normalize_order(raw: Optional[Dict[str, Any]]) -> NormalizedOrder:
    """
    Map one SalesDrive payload to a NormalizedOrder.

    Missing optional fields fall back to empty values; only a missing
    payload is rejected.

    Raises:
        InvalidPayloadError: If raw is None
    """
    if raw is None:
        raise InvalidPayloadError("Order payload is empty")

    delivery_list = raw.get("ord_delivery_data")
    delivery = delivery_list[0] if isinstance(delivery_list, list) and delivery_list else {}
    if not isinstance(delivery, dict):
        delivery = {}

    items = _parse_items(raw)
    customer_name, customer_phone = _parse_contact(raw)
    status_id = raw.get("statusId")

    return NormalizedOrder(
        external_id=generate_external_id(raw),
        remote_id=_to_int(raw.get("id")),
        status=str(status_id) if status_id is not None else "",
        status_text=_lookup(STATUS_LABELS, status_id),
        tracking_number=str(delivery.get("trackingNumber") or ""),
        quantity=calculate_quantity(raw.get("kilTPorcij"), items),
        items=items,
        customer_name=customer_name,
        customer_phone=customer_phone,
        delivery_address=str(raw.get("shipping_address") or ""),
        total_price=_to_float(raw.get("paymentAmount")),
        order_date=parse_remote_datetime(raw.get("orderTime")),
        remote_updated_at=parse_remote_datetime(raw.get("updateAt")),
        shipping_method=_lookup(SHIPPING_METHOD_LABELS, raw.get("shipping_method")),
        payment_method=_lookup(PAYMENT_METHOD_LABELS, raw.get("payment_method")),
        city=str(delivery.get("cityName") or ""),
        provider=str(delivery.get("provider") or ""),
        raw_data=raw,
    )
