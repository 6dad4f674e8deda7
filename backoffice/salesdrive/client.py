"""
SalesDrive REST API client.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..db.models import OrderFilter, SyncWindow
from .errors import (
    SalesDriveConfigError,
    SalesDriveRateLimitError,
    SalesDriveUnavailableError,
)
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
ALL_STATUSES = "__ALL__"
FILTER_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class OrderListPage:
    """One page of the order list endpoint."""

    page: int
    orders: List[Dict[str, Any]]
    total: int


class SalesDriveClient:
    """
    Async HTTP client for the SalesDrive order API.

    Every request goes through the shared RateLimiter, so throttling and
    circuit breaking apply to all callers at once.
    """

    LIST_PATH = "/api/order/list/"
    UPDATE_PATH = "/api/order/update/"

    # Internal status codes that differ from SalesDrive status ids
    STATUS_ID_MAPPING = {
        "id3": "3",
    }

    def __init__(
        self,
        api_url: str,
        api_key: str,
        limiter: RateLimiter,
        form_key: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize SalesDrive client.

        Args:
            api_url: Account base URL (e.g., "https://myshop.salesdrive.me")
            api_key: Form API key
            limiter: Process-wide rate limiter
            form_key: Form key, required only for status updates
            transport: Optional httpx transport (tests)
        """
        base = api_url.strip()
        if base.endswith(self.LIST_PATH):
            base = base[: -len(self.LIST_PATH)]
        base = base.rstrip("/")

        self.api_url = base
        self.api_key = api_key
        self.form_key = form_key
        self.limiter = limiter

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.is_configured:
            logger.warning("SalesDrive API credentials not configured")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def _require_config(self) -> None:
        if not self.is_configured:
            raise SalesDriveConfigError("SalesDrive API credentials not configured")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=httpx.Timeout(60.0, connect=10.0),
                headers={
                    "Form-Api-Key": self.api_key,
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def build_list_params(
        page: int,
        limit: int,
        window: SyncWindow,
        filter_kind: OrderFilter,
        status_id: str = ALL_STATUSES,
    ) -> Dict[str, str]:
        field = filter_kind.value
        return {
            "page": str(page),
            "limit": str(min(limit, MAX_PAGE_SIZE)),
            f"filter[{field}][from]": window.start.strftime(FILTER_DATE_FORMAT),
            f"filter[{field}][to]": window.end.strftime(FILTER_DATE_FORMAT),
            "filter[statusId]": status_id,
        }

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_s = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_s = None
            raise SalesDriveRateLimitError(
                f"{what}: rate limit exceeded", retry_after=retry_after_s
            )

        if response.status_code in (401, 403):
            raise SalesDriveConfigError(
                f"{what}: authentication failed ({response.status_code})"
            )

        if response.status_code >= 400:
            raise SalesDriveUnavailableError(
                f"{what}: HTTP {response.status_code} - {response.reason_phrase}",
                status_code=response.status_code,
            )

    async def _fetch_page(self, params: Dict[str, str]) -> OrderListPage:
        """Single attempt at one page. Classifies failures for the limiter."""
        client = await self._get_client()
        page = int(params["page"])
        what = f"Order list page {page}"

        try:
            response = await client.get(self.LIST_PATH, params=params)
        except httpx.RequestError as e:
            raise SalesDriveUnavailableError(f"{what}: request error: {e}") from e

        self._raise_for_status(response, what)

        try:
            data = response.json()
        except ValueError as e:
            raise SalesDriveUnavailableError(f"{what}: invalid JSON response") from e

        if data.get("status") != "success":
            raise SalesDriveUnavailableError(
                f"{what}: API error: {data.get('message') or 'Unknown error'}"
            )

        orders = data.get("data") or []
        totals = data.get("totals") or {}
        total = totals.get("count") or len(orders)

        return OrderListPage(page=page, orders=orders, total=int(total))

    async def list_orders(
        self,
        page: int,
        limit: int,
        window: SyncWindow,
        filter_kind: OrderFilter = OrderFilter.ORDER_TIME,
    ) -> OrderListPage:
        """
        Fetch one page of orders with retry and backoff.

        Raises:
            SalesDriveConfigError: If credentials are missing
            SalesDriveCircuitOpenError: If the circuit breaker is open
            SalesDriveRateLimitError: If still throttled after retries
            SalesDriveUnavailableError: For other failures after retries
        """
        self._require_config()
        params = self.build_list_params(page, limit, window, filter_kind)
        return await self.limiter.execute(
            lambda: self._fetch_page(params),
            description=f"Order list page {page}",
        )

    async def check_connection(self) -> bool:
        """Request a one-order list page to check the API is reachable."""
        if not self.is_configured:
            return False

        client = await self._get_client()
        try:
            response = await client.get(self.LIST_PATH, params={"page": "1", "limit": "1"})
            return response.is_success
        except httpx.RequestError as e:
            logger.error(f"SalesDrive API connection failed: {e}")
            return False

    async def _post_update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        what = f"Order update {body.get('externalId') or body.get('id')}"

        try:
            response = await client.post(
                self.UPDATE_PATH,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.RequestError as e:
            raise SalesDriveUnavailableError(f"{what}: request error: {e}") from e

        self._raise_for_status(response, what)

        try:
            return response.json()
        except ValueError as e:
            raise SalesDriveUnavailableError(f"{what}: invalid JSON response") from e

    async def update_order_status(
        self,
        external_id: str,
        status: str,
        remote_id: Optional[int] = None,
    ) -> bool:
        """
        Push a status change back to SalesDrive.

        Orders are addressed by SalesDrive id when known, otherwise by
        external id.

        Returns:
            The success flag reported by SalesDrive
        """
        self._require_config()
        if not self.form_key:
            raise SalesDriveConfigError("SalesDrive form key not configured")

        status_id = self.STATUS_ID_MAPPING.get(status, status)
        body: Dict[str, Any] = {"form": self.form_key, "data": {"statusId": status_id}}
        if remote_id is not None:
            body["id"] = remote_id
        else:
            body["externalId"] = external_id

        logger.info(f"Updating order {external_id} status to {status_id} in SalesDrive")

        result = await self.limiter.execute(
            lambda: self._post_update(body),
            description=f"Order update {external_id}",
        )

        if result.get("success"):
            return True

        logger.error(f"SalesDrive rejected status update for {external_id}: {result}")
        return False

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
