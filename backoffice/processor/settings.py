"""
Sync tunables stored in the settings table.
"""

import logging
from typing import Any, Dict, Optional

from ..db import OrderFilter, SQLiteDatabase

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "orders.batch_size": 100,
    "orders.retry_attempts": 3,
    "orders.retry_delay": 2.0,
    "orders.filter_type": OrderFilter.UPDATE_AT.value,
    "orders.base_delay": 2.0,
    "orders.max_delay": 30.0,
    "orders.jitter_range": 1.0,
    "orders.max_pages": 100,
    "general.max_concurrent_pages": 1,
    "general.cache_ttl": 15 * 60,
    "general.cache_max_size": 50,
    "general.cache_cleanup_interval": 5 * 60,
    "manual.chunk_size": 1000,
}

MAX_CHUNK_SIZE = 2000

_MISSING = object()


class SyncSettings:
    """
    Read-only view over stored settings with code defaults.

    Keys are dotted ("orders.batch_size"). A value may be stored either
    under the full dotted key or nested inside a dict stored under a
    prefix ("orders" -> {"batch_size": 50}).
    """

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values = dict(values or {})

    @classmethod
    async def load(cls, db: SQLiteDatabase) -> "SyncSettings":
        return cls(await db.get_settings())

    def _lookup(self, key: str) -> Any:
        if key in self._values:
            return self._values[key]

        parts = key.split(".")
        for i in range(len(parts) - 1, 0, -1):
            node = self._values.get(".".join(parts[:i]))
            for part in parts[i:]:
                if not isinstance(node, dict) or part not in node:
                    node = _MISSING
                    break
                node = node[part]
            if node is not _MISSING:
                return node

        return _MISSING

    def get(self, key: str, default: Any = None) -> Any:
        value = self._lookup(key)
        if value is not _MISSING and value is not None:
            return value
        if default is not None:
            return default
        return DEFAULTS.get(key)

    def _number(self, key: str, cast=float) -> Any:
        value = self.get(key)
        try:
            return cast(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for setting {key}: {value!r}, using default")
            return cast(DEFAULTS[key])

    @property
    def batch_size(self) -> int:
        return self._number("orders.batch_size", int)

    @property
    def retry_attempts(self) -> int:
        return max(1, self._number("orders.retry_attempts", int))

    @property
    def retry_delay(self) -> float:
        return self._number("orders.retry_delay")

    @property
    def base_delay(self) -> float:
        return self._number("orders.base_delay")

    @property
    def max_delay(self) -> float:
        return self._number("orders.max_delay")

    @property
    def jitter_range(self) -> float:
        return self._number("orders.jitter_range")

    @property
    def max_pages(self) -> int:
        return self._number("orders.max_pages", int)

    @property
    def filter_kind(self) -> OrderFilter:
        value = self.get("orders.filter_type")
        try:
            return OrderFilter(value)
        except ValueError:
            logger.warning(f"Unknown order filter {value!r}, using {DEFAULTS['orders.filter_type']}")
            return OrderFilter(DEFAULTS["orders.filter_type"])

    @property
    def max_concurrent_pages(self) -> int:
        return max(1, self._number("general.max_concurrent_pages", int))

    @property
    def cache_ttl(self) -> float:
        return self._number("general.cache_ttl")

    @property
    def cache_max_size(self) -> int:
        return self._number("general.cache_max_size", int)

    @property
    def cache_cleanup_interval(self) -> float:
        return self._number("general.cache_cleanup_interval")

    @property
    def chunk_size(self) -> int:
        return min(max(1, self._number("manual.chunk_size", int)), MAX_CHUNK_SIZE)
