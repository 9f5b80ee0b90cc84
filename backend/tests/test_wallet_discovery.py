"""Discovery pipeline: candidate enumeration, filters, pass control."""

import asyncio
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.errors import PoolExhausted, UpstreamError  # noqa: E402
from services.key_pool import ApiKeyPool  # noqa: E402
from services.wallet_discovery import WalletDiscoveryEngine  # noqa: E402
from services.wallet_scoring import ScoringWeights  # noqa: E402


class FakeDiscoveryClient:
    def __init__(self, holders=None, values=None, activity=None, trades=None):
        self.holders = holders or {}
        self.values = values or {}
        self.activity = activity or {}
        self.trades = trades or {}
        self.errors: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.holders_gate = None

    def _maybe_raise(self, method, key):
        self.calls.append((method, key))
        error = self.errors.get((method, key))
        if error:
            raise error

    async def get_token_holders(self, token, page=1, page_size=100):
        if self.holders_gate is not None:
            await self.holders_gate.wait()
        self._maybe_raise("holders", token)
        holders = self.holders.get(token, [])
        return holders[(page - 1) * page_size:page * page_size]

    async def get_total_portfolio_value(self, address):
        self._maybe_raise("value", address)
        return self.values.get(address, 0.0)

    async def get_recent_trade_count(self, address, window_days=30, max_count=50):
        self._maybe_raise("activity", address)
        return self.activity.get(address, 0)

    async def get_trade_history(self, address, max_count=500):
        self._maybe_raise("history", address)
        return list(self.trades.get(address, []))

    async def get_current_prices(self, symbols):
        return {}

    def called(self, method):
        return [key for name, key in self.calls if name == method]


class UniqueHoldersClient(FakeDiscoveryClient):
    """Pages are transfer rows; only unique addresses per page come back."""

    async def get_token_holders(self, token, page=1, page_size=100):
        rows = await super().get_token_holders(token, page, page_size)
        return list(dict.fromkeys(rows))


class FakeStore:
    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.watched: dict[str, str] = {}

    async def upsert_suggested_wallet(self, address, metrics):
        self.rows[address] = dict(metrics)

    async def add_watched_wallets(self, addresses, source_token=None):
        added = 0
        for address in dict.fromkeys(addresses):
            if address not in self.watched:
                self.watched[address] = source_token
                added += 1
        return added

    async def list_watched_addresses(self, limit=None):
        addresses = list(self.watched)
        return addresses[:limit] if limit else addresses


def _engine(client, store=None, no_sleep=None, **overrides):
    options = dict(
        capital_floor_usd=50_000,
        min_recent_trades=4,
        activity_window_days=30,
        activity_sample_size=50,
        holders_per_token=200,
        holder_page_size=2,
        holder_page_delay=0,
        delay_between_wallets=0,
        max_concurrency=1,
    )
    options.update(overrides)
    return WalletDiscoveryEngine(
        client,
        store=store or FakeStore(),
        weights=ScoringWeights(),
        sleep=no_sleep,
        **options,
    )


@pytest.fixture
def profitable_trades(make_trade):
    return [
        make_trade("buy", "ETH", 10, 100, days_ago=20),
        make_trade("sell", "ETH", 5, 150, days_ago=10),
    ]


class TestCandidates:
    @pytest.mark.asyncio
    async def test_holders_are_paged_unioned_and_deduplicated(self, no_sleep):
        client = FakeDiscoveryClient(
            holders={
                "0xtoken1": ["0xa", "0xb", "0xc", "0xd", "0xe"],
                "0xtoken2": ["0xc", "0xf"],
            }
        )
        engine = _engine(client, no_sleep=no_sleep)

        candidates = await engine.discover_candidates(["0xToken1", "0xtoken2", "0xtoken1"])

        assert candidates == {"0xa", "0xb", "0xc", "0xd", "0xe", "0xf"}
        # paging runs until an empty page: 5 holders at 2 per page -> 4 calls
        assert client.called("holders") == ["0xtoken1"] * 4 + ["0xtoken2"] * 2

    @pytest.mark.asyncio
    async def test_paging_continues_past_page_with_repeated_holders(self, no_sleep):
        client = UniqueHoldersClient(holders={"0xt": ["0xa", "0xa", "0xb", "0xc"]})
        engine = _engine(client, no_sleep=no_sleep)

        assert await engine.discover_candidates(["0xt"]) == {"0xa", "0xb", "0xc"}
        assert client.called("holders") == ["0xt"] * 3

    @pytest.mark.asyncio
    async def test_holders_are_capped_per_token(self, no_sleep):
        client = FakeDiscoveryClient(holders={"0xt": ["0xa", "0xb", "0xc", "0xd", "0xe"]})
        engine = _engine(client, no_sleep=no_sleep, holders_per_token=3)

        assert await engine.discover_candidates(["0xt"]) == {"0xa", "0xb", "0xc"}

    @pytest.mark.asyncio
    async def test_failed_token_lookup_skips_only_that_token(self, no_sleep):
        client = FakeDiscoveryClient(holders={"0xgood": ["0xa"]})
        client.errors[("holders", "0xbad")] = UpstreamError("HTTP 500", status_code=500)
        engine = _engine(client, no_sleep=no_sleep)

        assert await engine.discover_candidates(["0xbad", "0xgood"]) == {"0xa"}


class TestFilters:
    @pytest.mark.asyncio
    async def test_capital_floor_is_inclusive(self, no_sleep):
        client = FakeDiscoveryClient(values={"0xexact": 50_000.0, "0xshort": 49_999.99})
        engine = _engine(client, no_sleep=no_sleep)

        assert await engine.passes_capital_filter("0xexact") == (True, 50_000.0)
        assert await engine.passes_capital_filter("0xshort") == (False, 49_999.99)

    @pytest.mark.asyncio
    async def test_activity_minimum_is_inclusive(self, no_sleep):
        client = FakeDiscoveryClient(activity={"0xbusy": 4, "0xquiet": 3})
        engine = _engine(client, no_sleep=no_sleep)

        assert (await engine.passes_activity_filter("0xbusy"))[0] is True
        assert (await engine.passes_activity_filter("0xquiet"))[0] is False

    @pytest.mark.asyncio
    async def test_capital_rejection_skips_activity_and_analysis(self, no_sleep):
        client = FakeDiscoveryClient(values={"0xpoor": 10.0})
        engine = _engine(client, no_sleep=no_sleep)

        assert await engine.evaluate_candidate("0xpoor") is None
        assert client.called("activity") == []
        assert client.called("history") == []

    @pytest.mark.asyncio
    async def test_portfolio_value_is_fetched_once_per_candidate(self, no_sleep, profitable_trades):
        client = FakeDiscoveryClient(
            values={"0xrich": 80_000.0},
            activity={"0xrich": 9},
            trades={"0xrich": profitable_trades},
        )
        store = FakeStore()
        engine = _engine(client, store=store, no_sleep=no_sleep)

        metrics = await engine.evaluate_candidate("0xrich")

        assert metrics is not None
        assert client.called("value") == ["0xrich"]
        assert store.rows["0xrich"]["total_value"] == 80_000.0
        assert store.rows["0xrich"]["realized_pnl"] == 250.0


class TestDiscoveryPass:
    @pytest.mark.asyncio
    async def test_pass_filters_analyzes_and_counts(self, no_sleep, profitable_trades):
        client = FakeDiscoveryClient(
            holders={"0xt1": ["0xa", "0xb", "0xc"], "0xt2": ["0xc", "0xd"]},
            values={"0xa": 90_000.0, "0xb": 1_000.0, "0xc": 70_000.0, "0xd": 60_000.0},
            activity={"0xa": 12, "0xc": 1, "0xd": 8},
            trades={"0xa": profitable_trades},
        )
        store = FakeStore()
        engine = _engine(client, store=store, no_sleep=no_sleep)

        stats = await engine.run_discovery_pass(["0xt1", "0xt2"])

        assert stats.candidates == 4
        assert stats.watch_list_added == 4
        assert stats.rejected_capital == 1
        assert stats.rejected_activity == 1
        assert stats.analyzed == 1
        assert stats.failed == 1  # 0xd has no history
        assert stats.aborted is False
        assert list(store.rows) == ["0xa"]
        assert engine.last_candidates == ["0xa", "0xb", "0xc", "0xd"]
        assert engine.get_status()["last_run"]["analyzed"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_wallet_error_does_not_stop_the_pass(self, no_sleep, profitable_trades):
        client = FakeDiscoveryClient(
            holders={"0xt": ["0xa", "0xb"]},
            values={"0xb": 90_000.0},
            activity={"0xb": 10},
            trades={"0xb": profitable_trades},
        )
        client.errors[("value", "0xa")] = RuntimeError("boom")
        store = FakeStore()
        engine = _engine(client, store=store, no_sleep=no_sleep)

        stats = await engine.run_discovery_pass(["0xt"])

        assert stats.failed == 1
        assert stats.analyzed == 1
        assert "0xb" in store.rows

    @pytest.mark.asyncio
    async def test_pool_exhaustion_abandons_remaining_wallets(self, no_sleep):
        client = FakeDiscoveryClient(
            holders={"0xt": ["0xa", "0xb", "0xc"]},
            values={"0xb": 90_000.0, "0xc": 90_000.0},
        )
        client.errors[("value", "0xa")] = PoolExhausted("all keys cooling down")
        store = FakeStore()
        engine = _engine(client, store=store, no_sleep=no_sleep)

        stats = await engine.run_discovery_pass(["0xt"])

        assert stats.aborted is True
        assert client.called("value") == ["0xa"]
        assert store.rows == {}

    @pytest.mark.asyncio
    async def test_pool_exhaustion_during_enumeration_aborts(self, no_sleep):
        client = FakeDiscoveryClient(holders={"0xt": ["0xa"]})
        client.errors[("holders", "0xt")] = PoolExhausted("holders pool exhausted")
        store = FakeStore()
        engine = _engine(client, store=store, no_sleep=no_sleep)

        stats = await engine.run_discovery_pass(["0xt"])

        assert stats.aborted is True
        assert store.watched == {}
        assert client.called("value") == []

    @pytest.mark.asyncio
    async def test_no_seed_tokens_is_a_skipped_pass(self, no_sleep):
        engine = _engine(FakeDiscoveryClient(), no_sleep=no_sleep)

        stats = await engine.run_discovery_pass([])

        assert stats.skipped_reason == "no seed tokens configured"
        assert stats.candidates == 0

    @pytest.mark.asyncio
    async def test_overlapping_pass_is_skipped(self, no_sleep):
        client = FakeDiscoveryClient(holders={"0xt": []})
        client.holders_gate = asyncio.Event()
        engine = _engine(client, no_sleep=no_sleep)

        first = asyncio.create_task(engine.run_discovery_pass(["0xt"]))
        await asyncio.sleep(0)

        second = await engine.run_discovery_pass(["0xt"])
        client.holders_gate.set()
        first_stats = await first

        assert second.skipped_reason == "already running"
        assert first_stats.skipped_reason is None
        assert engine.get_status()["running"] is False

    @pytest.mark.asyncio
    async def test_global_cooldown_skips_pass_then_clears(self, no_sleep, clock, alerts):
        client = FakeDiscoveryClient(holders={"0xt": []})
        client.pool = ApiKeyPool(["k"], notifier=alerts, clock=clock)
        client.pool.enter_global_cooldown("throttled")
        engine = _engine(client, no_sleep=no_sleep)

        skipped = await engine.run_discovery_pass(["0xt"])

        assert "global cooldown" in skipped.skipped_reason
        assert client.called("holders") == []

        clock.advance(client.pool.config.global_cooldown_seconds + 1)
        resumed = await engine.run_discovery_pass(["0xt"])

        assert resumed.skipped_reason is None
        assert client.called("holders") == ["0xt"]
        assert alerts.subjects[-1] == "market-data API keys reactivated"


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_rescores_watch_list_minus_exclusions(self, no_sleep, profitable_trades):
        store = FakeStore()
        await store.add_watched_wallets(["0xa", "0xb"], source_token="0xt")
        client = FakeDiscoveryClient(
            values={"0xa": 90_000.0, "0xb": 90_000.0},
            activity={"0xa": 5, "0xb": 5},
            trades={"0xa": profitable_trades, "0xb": profitable_trades},
        )
        engine = _engine(client, store=store, no_sleep=no_sleep)

        stats = await engine.refresh_watched_wallets(exclude=["0xA"])

        assert stats.kind == "refresh"
        assert stats.candidates == 1
        assert list(store.rows) == ["0xb"]

    @pytest.mark.asyncio
    async def test_refresh_rescores_wallets_that_fail_discovery_filters(self, no_sleep, profitable_trades):
        store = FakeStore()
        await store.add_watched_wallets(["0xa"], source_token="0xt")
        client = FakeDiscoveryClient(
            values={"0xa": 10.0},
            activity={"0xa": 0},
            trades={"0xa": profitable_trades},
        )
        engine = _engine(client, store=store, no_sleep=no_sleep)

        stats = await engine.refresh_watched_wallets()

        assert stats.analyzed == 1
        assert stats.rejected_capital == 0
        assert stats.rejected_activity == 0
        assert list(store.rows) == ["0xa"]
        assert client.called("history") == ["0xa"]
        assert client.called("activity") == []

    @pytest.mark.asyncio
    async def test_refresh_stops_when_credentials_run_out(self, no_sleep, profitable_trades):
        store = FakeStore()
        await store.add_watched_wallets(["0xa", "0xb"], source_token="0xt")
        client = FakeDiscoveryClient(trades={"0xb": profitable_trades})
        client.errors[("history", "0xa")] = PoolExhausted("all keys cooling down")
        engine = _engine(client, store=store, no_sleep=no_sleep)

        stats = await engine.refresh_watched_wallets()

        assert stats.aborted is True
        assert client.called("history") == ["0xa"]
        assert store.rows == {}
