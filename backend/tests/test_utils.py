import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from utils.logger import JSONFormatter, SecretRedactionFilter, mask_secret  # noqa: E402
from utils.rate_limiter import PacingRule, RateLimiter, endpoint_for_path  # noqa: E402
from utils.retry import RetryConfig, calculate_delay, is_transient_error  # noqa: E402
from utils.utcnow import parse_timestamp  # noqa: E402


class TestParseTimestamp:
    def test_iso_with_zulu_and_offset(self):
        assert parse_timestamp("2024-03-01T12:00:00Z") == datetime(2024, 3, 1, 12, 0, 0)
        assert parse_timestamp("2024-03-01T14:00:00+02:00") == datetime(2024, 3, 1, 12, 0, 0)

    def test_epoch_seconds_and_milliseconds(self):
        assert parse_timestamp(1_700_000_000) == parse_timestamp(1_700_000_000_000)

    @pytest.mark.parametrize("value", [None, "", "yesterday", True])
    def test_garbage_is_none(self, value):
        assert parse_timestamp(value) is None


class TestRetry:
    def test_attempts_scale_with_key_count(self):
        assert RetryConfig.for_key_count(0).max_attempts == 2
        assert RetryConfig.for_key_count(3).max_attempts == 4
        assert RetryConfig.for_key_count(3, configured_attempts=7).max_attempts == 7

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=4.0, jitter=False)

        assert [calculate_delay(n, config) for n in range(4)] == [1.0, 2.0, 4.0, 4.0]

    def test_transient_errors(self):
        config = RetryConfig()
        request = httpx.Request("GET", "https://example.test")

        assert is_transient_error(httpx.ConnectTimeout("slow", request=request), config)
        assert is_transient_error(httpx.ConnectError("refused", request=request), config)
        assert not is_transient_error(ValueError("bad json"), config)


def test_endpoint_families():
    assert endpoint_for_path("market-data", "/wallets/0xa/transactions") == "market_data_transactions"
    assert endpoint_for_path("market-data", "/wallets/0xa/portfolio") == "market_data_portfolio"
    assert endpoint_for_path("market-data", "/fungibles") == "market_data_prices"
    assert endpoint_for_path("holders", "/tokentx") == "holders"


class TestLogging:
    def test_mask_secret(self):
        assert mask_secret("abcdef123") == "abcd…"
        assert mask_secret("abc") == "***"
        assert mask_secret(None) == ""

    def test_json_formatter_redacts_credentials(self):
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "Calling provider", (), None)
        record.extra_data = {"apikey": "supersecretvalue", "address": "0xabc"}

        SecretRedactionFilter().filter(record)
        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "Calling provider"
        assert payload["data"]["address"] == "0xabc"
        assert "supersecretvalue" not in payload["data"]["apikey"]


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_burst_then_paced(self, clock):
        waits = []

        async def record(seconds):
            waits.append(seconds)

        limiter = RateLimiter({"holders": PacingRule.per_window(2, 1)}, clock=clock, sleep=record)

        delays = [await limiter.acquire("holders") for _ in range(4)]

        assert delays == [0.0, 0.0, 0.5, 1.0]
        assert waits == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_budget_refills_with_time(self, clock):
        async def record(seconds):
            return None

        limiter = RateLimiter({"holders": PacingRule.per_window(2, 1)}, clock=clock, sleep=record)
        for _ in range(2):
            await limiter.acquire("holders")

        clock.advance(1.0)

        assert await limiter.acquire("holders") == 0.0
        assert limiter.get_status()["holders"]["requests"] == 3
