from .logger import setup_logging, get_logger, mask_secret
from .retry import RetryConfig, calculate_delay, is_transient_error
from .rate_limiter import RateLimiter, rate_limiter, endpoint_for_path
from .utcnow import utcnow, parse_timestamp

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "mask_secret",

    # Retry
    "RetryConfig",
    "calculate_delay",
    "is_transient_error",

    # Rate Limiter
    "RateLimiter",
    "rate_limiter",
    "endpoint_for_path",

    # Time
    "utcnow",
    "parse_timestamp",
]
