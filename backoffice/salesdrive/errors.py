"""
SalesDrive error hierarchy.
"""

from typing import Optional


class SalesDriveError(Exception):
    """Base exception for SalesDrive client errors."""
    pass


class SalesDriveConfigError(SalesDriveError):
    """API credentials are missing. Raised before any request is sent."""
    pass


class SalesDriveRateLimitError(SalesDriveError):
    """The API answered 429 Too Many Requests."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class SalesDriveCircuitOpenError(SalesDriveError):
    """Circuit breaker is open; no further calls are allowed for now."""

    def __init__(self, message: str, open_until: Optional[float] = None):
        super().__init__(message)
        self.open_until = open_until


class SalesDriveUnavailableError(SalesDriveError):
    """Non-2xx response, transport failure or an error payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidPayloadError(SalesDriveError):
    """A raw order payload could not be normalized."""
    pass
