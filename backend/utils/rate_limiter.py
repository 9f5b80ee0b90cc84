import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from utils.logger import get_logger

logger = get_logger("rate_limiter")


@dataclass(frozen=True)
class PacingRule:
    """Sustained request rate for one endpoint family, plus how many calls
    may go out back to back before pacing kicks in."""

    per_second: float
    burst: int = 1

    @classmethod
    def per_window(cls, requests: int, window_seconds: float, burst: Optional[int] = None) -> "PacingRule":
        return cls(per_second=requests / window_seconds, burst=burst or requests)


class _Bucket:
    __slots__ = ("rule", "level", "updated_at", "waited_seconds", "requests")

    def __init__(self, rule: PacingRule, now: float):
        self.rule = rule
        self.level = float(rule.burst)
        self.updated_at = now
        self.waited_seconds = 0.0
        self.requests = 0

    def reserve(self, now: float) -> float:
        """Take one slot and return how long the caller must wait for it.

        The level may go negative: later callers queue behind earlier
        reservations without anyone holding a lock while sleeping.
        """
        self.level = min(float(self.rule.burst), self.level + (now - self.updated_at) * self.rule.per_second)
        self.updated_at = now
        self.level -= 1.0
        self.requests += 1
        if self.level >= 0:
            return 0.0
        delay = -self.level / self.rule.per_second
        self.waited_seconds += delay
        return delay


class RateLimiter:
    """Client-side pacing in front of the key pool.

    The pool reacts to 429s after the fact; these buckets keep us from
    provoking them in the first place.
    """

    # Free/dev tier quotas for the providers we talk to.
    RULES: Dict[str, PacingRule] = {
        "market_data_transactions": PacingRule.per_window(10, 10, burst=3),
        "market_data_portfolio": PacingRule.per_window(10, 10, burst=3),
        "market_data_prices": PacingRule.per_window(10, 10, burst=3),
        "holders": PacingRule.per_window(5, 1),
        "secondary_prices": PacingRule.per_window(30, 60, burst=5),
    }
    DEFAULT_RULE = PacingRule.per_window(100, 10)

    def __init__(
        self,
        rules: Optional[Dict[str, PacingRule]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self._rules: Dict[str, PacingRule] = {**self.RULES, **(rules or {})}
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def _bucket(self, family: str) -> _Bucket:
        bucket = self._buckets.get(family)
        if bucket is None:
            bucket = _Bucket(self._rules.get(family, self.DEFAULT_RULE), self._clock())
            self._buckets[family] = bucket
        return bucket

    async def acquire(self, family: str) -> float:
        """Wait for a slot in ``family``; returns the seconds waited."""
        with self._lock:
            delay = self._bucket(family).reserve(self._clock())
        if delay > 0:
            logger.debug("Pacing request", endpoint=family, wait_seconds=round(delay, 3))
            await self._sleep(delay)
        return delay

    def get_status(self) -> Dict[str, dict]:
        with self._lock:
            return {
                family: {
                    "requests": bucket.requests,
                    "waited_seconds": round(bucket.waited_seconds, 3),
                    "per_second": bucket.rule.per_second,
                    "burst": bucket.rule.burst,
                }
                for family, bucket in self._buckets.items()
            }


rate_limiter = RateLimiter()


def endpoint_for_path(provider: str, path: str) -> str:
    """Map a provider + request path to its pacing bucket."""
    if provider in ("holders", "secondary_prices"):
        return provider
    if "/transactions" in path:
        return "market_data_transactions"
    if "/portfolio" in path or "/positions" in path:
        return "market_data_portfolio"
    if "/fungibles" in path:
        return "market_data_prices"
    return "default"
