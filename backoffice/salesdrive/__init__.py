"""
SalesDrive API module.
"""

from .errors import (
    SalesDriveError,
    SalesDriveConfigError,
    SalesDriveRateLimitError,
    SalesDriveCircuitOpenError,
    SalesDriveUnavailableError,
    InvalidPayloadError,
)
from .rate_limit import RateLimiter, RateLimitState
from .client import SalesDriveClient, OrderListPage, MAX_PAGE_SIZE
from .normalizer import NormalizedOrder, normalize_order, generate_external_id
from .cache import QueryCache, make_key
from .collector import OrderCollector, CollectionResult

__all__ = [
    "SalesDriveError",
    "SalesDriveConfigError",
    "SalesDriveRateLimitError",
    "SalesDriveCircuitOpenError",
    "SalesDriveUnavailableError",
    "InvalidPayloadError",
    "RateLimiter",
    "RateLimitState",
    "SalesDriveClient",
    "OrderListPage",
    "MAX_PAGE_SIZE",
    "NormalizedOrder",
    "normalize_order",
    "generate_external_id",
    "QueryCache",
    "make_key",
    "OrderCollector",
    "CollectionResult",
]
