"""
Paginated order collection from SalesDrive.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..db.models import OrderFilter, SyncWindow
from .cache import QueryCache, make_key
from .client import MAX_PAGE_SIZE, OrderListPage, SalesDriveClient
from .errors import (
    SalesDriveCircuitOpenError,
    SalesDriveConfigError,
    SalesDriveError,
    SalesDriveUnavailableError,
)
from .normalizer import generate_external_id

logger = logging.getLogger(__name__)


@dataclass
class CollectionResult:
    """Orders gathered for one window."""

    orders: List[Dict[str, Any]]
    total: int
    pages_fetched: int = 0
    total_pages: int = 0
    failed_pages: List[int] = field(default_factory=list)
    truncated: bool = False

    @property
    def complete(self) -> bool:
        return not self.failed_pages and not self.truncated


class OrderCollector:
    """
    Fetches every page of a date window.

    Page 1 gives the reported total. The remaining pages are fetched in
    batches of ``concurrency_limit`` pages; batches run one after another
    with a pause that grows with the page count.
    """

    MAX_PAGES = 100

    # (max total pages, pause between batches in seconds)
    BATCH_DELAYS = ((10, 0.5), (50, 2.0))
    LONG_BATCH_DELAY = 6.0

    def __init__(
        self,
        client: SalesDriveClient,
        cache: Optional[QueryCache] = None,
        page_size: int = MAX_PAGE_SIZE,
        concurrency_limit: int = 1,
        max_pages: int = MAX_PAGES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.cache = cache
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self.concurrency_limit = max(1, concurrency_limit)
        self.max_pages = max(1, max_pages)
        self._sleep = sleep

    @classmethod
    def batch_delay(cls, total_pages: int) -> float:
        for limit, delay in cls.BATCH_DELAYS:
            if total_pages <= limit:
                return delay
        return cls.LONG_BATCH_DELAY

    async def _fetch_page(
        self, page: int, window: SyncWindow, filter_kind: OrderFilter
    ) -> OrderListPage:
        return await self.client.list_orders(page, self.page_size, window, filter_kind)

    async def _fetch_first_page(
        self, window: SyncWindow, filter_kind: OrderFilter
    ) -> OrderListPage:
        try:
            return await self._fetch_page(1, window, filter_kind)
        except (SalesDriveCircuitOpenError, SalesDriveConfigError, SalesDriveUnavailableError):
            raise
        except SalesDriveError as e:
            raise SalesDriveUnavailableError(f"First page unavailable: {e}") from e

    async def collect(
        self,
        window: SyncWindow,
        filter_kind: OrderFilter = OrderFilter.ORDER_TIME,
    ) -> CollectionResult:
        """
        Collect all orders in a window.

        Pages other than the first that still fail after retries are
        recorded in ``failed_pages`` and skipped.

        Raises:
            SalesDriveUnavailableError: If page 1 could not be fetched
            SalesDriveCircuitOpenError: If the circuit breaker opens
            SalesDriveConfigError: If credentials are missing
        """
        logger.info(f"Collecting orders by {filter_kind.value} for {window}")

        first = await self._fetch_first_page(window, filter_kind)
        pages: List[OrderListPage] = [first]
        total = first.total

        total_pages = max(1, math.ceil(total / self.page_size))
        truncated = total_pages > self.max_pages
        if truncated:
            logger.warning(
                f"Window {window} reports {total} orders ({total_pages} pages); "
                f"only the first {self.max_pages} pages will be fetched"
            )
            total_pages = self.max_pages

        failed_pages: List[int] = []
        remaining = list(range(2, total_pages + 1))

        if remaining:
            logger.info(
                f"Total orders: {total}, fetching {len(remaining)} more pages "
                f"({self.concurrency_limit} at a time)"
            )

        delay = self.batch_delay(total_pages)
        batches = [
            remaining[i:i + self.concurrency_limit]
            for i in range(0, len(remaining), self.concurrency_limit)
        ]

        for index, batch in enumerate(batches):
            results = await asyncio.gather(
                *(self._fetch_page(page, window, filter_kind) for page in batch),
                return_exceptions=True,
            )

            for page, result in zip(batch, results):
                if isinstance(result, (SalesDriveCircuitOpenError, SalesDriveConfigError)):
                    raise result
                if isinstance(result, SalesDriveError):
                    logger.warning(f"Skipping page {page}: {result}")
                    failed_pages.append(page)
                    continue
                if isinstance(result, BaseException):
                    raise result
                pages.append(result)

            if index < len(batches) - 1:
                await self._sleep(delay)

        orders = self._dedupe(pages)
        logger.info(
            f"Collected {len(orders)} orders from {len(pages)}/{total_pages} pages"
            + (f", {len(failed_pages)} pages failed" if failed_pages else "")
        )

        return CollectionResult(
            orders=orders,
            total=total,
            pages_fetched=len(pages),
            total_pages=total_pages,
            failed_pages=failed_pages,
            truncated=truncated,
        )

    @staticmethod
    def _dedupe(pages: List[OrderListPage]) -> List[Dict[str, Any]]:
        """Drop repeated orders; the copy seen last wins."""
        by_id: Dict[str, Dict[str, Any]] = {}
        anonymous: List[Dict[str, Any]] = []

        for page in sorted(pages, key=lambda p: p.page):
            for order in page.orders:
                if not isinstance(order, dict):
                    logger.warning(f"Ignoring malformed order entry on page {page.page}")
                    continue
                external_id = generate_external_id(order)
                if external_id:
                    by_id[external_id] = order
                else:
                    anonymous.append(order)

        return list(by_id.values()) + anonymous

    async def collect_cached(
        self,
        window: SyncWindow,
        filter_kind: OrderFilter = OrderFilter.ORDER_TIME,
    ) -> CollectionResult:
        """collect() memoized in the query cache. Incomplete results are not cached."""
        if self.cache is None:
            return await self.collect(window, filter_kind)

        method = "collect_orders"
        key = make_key(method, {
            "from": window.start,
            "to": window.end,
            "filter": filter_kind,
        })

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        result = await self.collect(window, filter_kind)
        if result.complete:
            self.cache.put(key, result, ttl=self.cache.determine_ttl(method, len(result.orders)))
        return result
