"""Attempt budgets and backoff for the market-data credential loop."""

import asyncio
import random
from dataclasses import dataclass
from typing import Tuple, Type

import httpx

# Failures that say nothing about the credential used.
TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ConnectionError,
    asyncio.TimeoutError,
)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    backoff_factor: float = 2.0
    jitter: bool = True
    transient_exceptions: Tuple[Type[BaseException], ...] = TRANSIENT_EXCEPTIONS

    def __post_init__(self):
        object.__setattr__(self, "max_attempts", max(1, int(self.max_attempts)))

    @classmethod
    def for_key_count(
        cls,
        key_count: int,
        configured_attempts: int = 0,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ) -> "RetryConfig":
        """One attempt per credential plus one, unless explicitly configured."""
        attempts = configured_attempts if configured_attempts > 0 else max(2, key_count + 1)
        return cls(max_attempts=attempts, base_delay=base_delay, max_delay=max_delay)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff capped at ``max_delay``, jittered by +/-50%."""
    delay = min(config.max_delay, config.base_delay * config.backoff_factor ** attempt)
    return delay * random.uniform(0.5, 1.5) if config.jitter else delay


def is_transient_error(error: BaseException, config: RetryConfig) -> bool:
    return isinstance(error, config.transient_exceptions)
