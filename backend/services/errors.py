"""Failure taxonomy for upstream market-data access and wallet analysis."""

from typing import Optional


class MarketDataError(Exception):
    """Base class for anything that went wrong talking to a provider."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        credential_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.credential_id = credential_id


class TransientError(MarketDataError):
    """Network failure or timeout. No credential is penalised."""


class RateLimited(MarketDataError):
    """HTTP 429 from the provider."""


class Unauthorized(MarketDataError):
    """HTTP 401/403 from the provider."""


class UpstreamError(MarketDataError):
    """Any other non-success response, or an unreadable body."""


class PoolExhausted(MarketDataError):
    """Every credential is unusable right now; the pool is cooling down."""


class DataUnavailable(Exception):
    """A required piece of wallet data could not be obtained."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"{address}: {reason}")
        self.address = address
        self.reason = reason
