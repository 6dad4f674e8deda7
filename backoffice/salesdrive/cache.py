"""
In-process query cache with TTL and least-used eviction.
"""

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float
    access_count: int = 1
    last_accessed_at: float = 0.0


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    raise TypeError(f"Cannot serialize {type(value).__name__} for cache key")


def make_key(method: str, params: Dict[str, Any]) -> str:
    """Canonical cache key: keys are sorted so field order never matters."""
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"), default=_json_default)
    return f"{method}:{payload}"


class QueryCache:
    """
    TTL cache for derived query results.

    When the cache is full a quarter of the entries is evicted, least
    accessed first and least recently accessed among equals. A background
    task purges expired entries on a fixed interval.

    All operations are synchronous, so on the event loop the sweep never
    interleaves with inserts or evictions.
    """

    EVICT_FRACTION = 0.25
    LARGE_RESULT_SIZE = 1000
    VOLATILE_MARKERS = ("stats", "sync")

    def __init__(
        self,
        max_size: int = 50,
        default_ttl: float = 15 * 60,
        cleanup_interval: float = 5 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss or an expired entry."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if now > entry.expires_at:
            del self._entries[key]
            return None

        entry.access_count += 1
        entry.last_accessed_at = now
        logger.debug(f"Cache hit for {key} (accessed {entry.access_count} times)")
        return entry.value

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl

        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_least_used()

        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl,
            access_count=1,
            last_accessed_at=now,
        )
        logger.debug(f"Cached {key} (TTL: {ttl:.0f}s)")

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_all(self) -> int:
        cleared = len(self._entries)
        self._entries.clear()
        return cleared

    def _evict_least_used(self) -> int:
        ranked = sorted(
            self._entries.values(),
            key=lambda e: (e.access_count, e.last_accessed_at),
        )
        to_evict = math.ceil(len(ranked) * self.EVICT_FRACTION)
        for entry in ranked[:to_evict]:
            del self._entries[entry.key]

        logger.info(f"Evicted {to_evict} least-used cache entries")
        return to_evict

    def determine_ttl(self, method: str, size: int) -> float:
        """Longer TTL for large result sets, shorter for volatile queries."""
        if size > self.LARGE_RESULT_SIZE:
            return self.default_ttl * 2
        if any(marker in method for marker in self.VOLATILE_MARKERS):
            return self.default_ttl * 0.5
        return self.default_ttl

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.info(f"Cleaned {len(expired)} expired cache entries")
        return len(expired)

    def info(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "default_ttl": self.default_ttl,
            "entries": [
                {
                    "key": entry.key,
                    "age_seconds": round(now - entry.created_at, 1),
                    "expires_in_seconds": round(entry.expires_at - now, 1),
                    "access_count": entry.access_count,
                }
                for entry in self._entries.values()
            ],
        }

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.purge_expired()

    def start_cleanup(self) -> None:
        """Start the background sweep. Requires a running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info(f"Cache cleanup started (interval: {self.cleanup_interval:.0f}s)")

    async def stop_cleanup(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
