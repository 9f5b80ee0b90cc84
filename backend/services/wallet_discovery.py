"""
Wallet Discovery Engine
=======================

Autonomous discovery of profitable wallets from seed-token holder lists.

Pipeline:
    1. Page through holders of each seed token contract
    2. Union and deduplicate the holder addresses
    3. Append unseen addresses to the watch list
    4. Capital filter: portfolio value must be >= the floor
    5. Activity filter: enough trades inside the recent window
    6. Deep analysis (FIFO ledger, PnL windows) for survivors
    7. Score and upsert into the SuggestedWallet table

Filters run cheapest first and short-circuit. A wallet that fails for any
reason is logged and skipped; running out of API credentials abandons the
rest of the pass and leaves existing rows untouched.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

from config import settings
from services.errors import DataUnavailable, MarketDataError, PoolExhausted
from services.key_pool import ApiKeyPool
from services.trade_ledger import TradeLedgerEngine
from services.wallet_scoring import ScoringWeights, build_suggested_wallet_metrics, score
from services.wallet_store import WalletStore, wallet_store
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("wallet_discovery")

# Wallets are handed to workers in batches so a pass never schedules
# thousands of coroutines at once.
ANALYSIS_BATCH_SIZE = 50


@dataclass
class DiscoveryRunStats:
    kind: str = "discovery"
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    seed_tokens: int = 0
    candidates: int = 0
    watch_list_added: int = 0
    rejected_capital: int = 0
    rejected_activity: int = 0
    analyzed: int = 0
    failed: int = 0
    aborted: bool = False
    skipped_reason: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

    def finish(self) -> None:
        self.finished_at = utcnow()

    def as_log_fields(self) -> dict[str, Any]:
        fields = asdict(self)
        fields.pop("started_at", None)
        fields.pop("finished_at", None)
        fields["duration_seconds"] = round(self.duration_seconds, 1)
        return fields


class WalletDiscoveryEngine:
    """Finds candidate wallets, filters them and keeps their rankings fresh."""

    def __init__(
        self,
        client,
        store: Optional[WalletStore] = None,
        ledger: Optional[TradeLedgerEngine] = None,
        weights: Optional[ScoringWeights] = None,
        *,
        capital_floor_usd: Optional[float] = None,
        min_recent_trades: Optional[int] = None,
        activity_window_days: Optional[int] = None,
        activity_sample_size: Optional[int] = None,
        holders_per_token: Optional[int] = None,
        holder_page_size: Optional[int] = None,
        holder_page_delay: Optional[float] = None,
        delay_between_wallets: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.store = store or wallet_store
        self.ledger = ledger or TradeLedgerEngine(client)
        self.weights = weights or ScoringWeights.from_settings()

        def pick(value, default):
            return default if value is None else value

        self.capital_floor_usd = float(pick(capital_floor_usd, settings.DISCOVERY_CAPITAL_FLOOR_USD))
        self.min_recent_trades = int(pick(min_recent_trades, settings.DISCOVERY_MIN_RECENT_TRADES))
        self.activity_window_days = int(pick(activity_window_days, settings.DISCOVERY_ACTIVITY_WINDOW_DAYS))
        self.activity_sample_size = int(pick(activity_sample_size, settings.DISCOVERY_ACTIVITY_SAMPLE_SIZE))
        self.holders_per_token = max(1, int(pick(holders_per_token, settings.DISCOVERY_HOLDERS_PER_TOKEN)))
        self.holder_page_size = max(1, int(pick(holder_page_size, settings.DISCOVERY_HOLDER_PAGE_SIZE)))
        self.holder_page_delay = max(0.0, float(pick(holder_page_delay, settings.DISCOVERY_HOLDER_PAGE_DELAY_SECONDS)))
        self.delay_between_wallets = max(0.0, float(pick(delay_between_wallets, settings.DISCOVERY_DELAY_BETWEEN_WALLETS)))
        self.max_concurrency = max(1, int(pick(max_concurrency, settings.DISCOVERY_MAX_CONCURRENCY)))
        self._sleep = sleep

        self._running = False
        self._last_stats: Optional[DiscoveryRunStats] = None
        self._last_run_at: Optional[datetime] = None
        self.last_candidates: list[str] = []

    # ------------------------------------------------------------------
    # 1. Candidate enumeration
    # ------------------------------------------------------------------

    async def _collect_holders(self, seed_tokens: Iterable[str]) -> dict[str, list[str]]:
        """Holder addresses per seed token, capped at ``holders_per_token``.

        A token whose holder lookup fails is skipped; ``PoolExhausted``
        propagates.
        """
        by_token: dict[str, list[str]] = {}
        for token in seed_tokens:
            token = str(token or "").strip().lower()
            if not token or token in by_token:
                continue
            collected: list[str] = []
            seen: set[str] = set()
            page = 1
            while len(collected) < self.holders_per_token:
                try:
                    holders = await self.client.get_token_holders(token, page, self.holder_page_size)
                except PoolExhausted:
                    raise
                except MarketDataError as exc:
                    logger.warning("Holder lookup failed", token=token, page=page, error=str(exc))
                    break
                finally:
                    if self.holder_page_delay > 0:
                        await self._sleep(self.holder_page_delay)

                fresh = [h for h in holders if h not in seen]
                seen.update(fresh)
                collected.extend(fresh)
                # Pages hold transfer rows, so a full page can yield fewer unique
                # holders than page_size. Stop on an empty or exhausted page.
                if not holders or not fresh:
                    break
                page += 1

            by_token[token] = collected[: self.holders_per_token]
            logger.info("Holders collected", token=token, holders=len(by_token[token]), pages=page)
        return by_token

    async def discover_candidates(self, seed_tokens: Iterable[str]) -> set[str]:
        by_token = await self._collect_holders(seed_tokens)
        candidates: set[str] = set()
        for holders in by_token.values():
            candidates.update(holders)
        return candidates

    # ------------------------------------------------------------------
    # 2. Filters
    # ------------------------------------------------------------------

    async def passes_capital_filter(self, address: str) -> tuple[bool, float]:
        value = await self.client.get_total_portfolio_value(address)
        return value >= self.capital_floor_usd, value

    async def passes_activity_filter(self, address: str) -> tuple[bool, int]:
        count = await self.client.get_recent_trade_count(
            address,
            window_days=self.activity_window_days,
            max_count=self.activity_sample_size,
        )
        return count >= self.min_recent_trades, count

    # ------------------------------------------------------------------
    # 3. Analysis + scoring
    # ------------------------------------------------------------------

    async def analyze_and_store(self, address: str, total_value_usd: Optional[float] = None) -> dict:
        analysis = await self.ledger.analyze_wallet(address, total_value_usd=total_value_usd)
        wallet_score = score(analysis, self.weights)
        metrics = build_suggested_wallet_metrics(analysis, wallet_score)
        await self.store.upsert_suggested_wallet(analysis.address, metrics)
        logger.info(
            "Wallet scored",
            address=analysis.address,
            smart_score=metrics["smart_score"],
            consistency_score=metrics["consistency_score"],
            pnl_percent_30d=metrics["pnl_percent_30d"],
            win_rate=metrics["win_rate"],
        )
        return metrics

    async def evaluate_candidate(self, address: str, stats: Optional[DiscoveryRunStats] = None) -> Optional[dict]:
        """Filters then deep analysis. ``None`` means the wallet was rejected."""
        stats = stats or DiscoveryRunStats(kind="single")

        has_capital, value = await self.passes_capital_filter(address)
        if not has_capital:
            stats.rejected_capital += 1
            logger.debug("Below capital floor", address=address, total_value=round(value, 2))
            return None

        is_active, trade_count = await self.passes_activity_filter(address)
        if not is_active:
            stats.rejected_activity += 1
            logger.debug("Not active enough", address=address, recent_trades=trade_count)
            return None

        metrics = await self.analyze_and_store(address, total_value_usd=value)
        stats.analyzed += 1
        return metrics

    async def rescore_watched(self, address: str, stats: Optional[DiscoveryRunStats] = None) -> dict:
        """Deep analysis without the discovery filters, for watch-listed wallets."""
        stats = stats or DiscoveryRunStats(kind="single")
        metrics = await self.analyze_and_store(address)
        stats.analyzed += 1
        return metrics

    async def _process_addresses(
        self,
        addresses: list[str],
        stats: DiscoveryRunStats,
        handler: Optional[Callable[[str, DiscoveryRunStats], Awaitable[Any]]] = None,
    ) -> None:
        handler = handler or self.evaluate_candidate
        semaphore = asyncio.Semaphore(self.max_concurrency)
        abort = asyncio.Event()

        async def evaluate(address: str):
            if abort.is_set():
                return
            async with semaphore:
                if abort.is_set():
                    return
                try:
                    await handler(address, stats)
                except PoolExhausted as exc:
                    if not abort.is_set():
                        abort.set()
                        stats.aborted = True
                        logger.error("API credentials exhausted, abandoning pass", address=address, error=str(exc))
                    return
                except DataUnavailable as exc:
                    stats.failed += 1
                    logger.info("Wallet skipped", address=address, reason=exc.reason)
                except Exception as e:
                    stats.failed += 1
                    logger.warning("Wallet analysis failed", address=address, error=str(e))
                if self.delay_between_wallets > 0 and not abort.is_set():
                    await self._sleep(self.delay_between_wallets)

        for start in range(0, len(addresses), ANALYSIS_BATCH_SIZE):
            if abort.is_set():
                break
            batch = addresses[start:start + ANALYSIS_BATCH_SIZE]
            await asyncio.gather(*(evaluate(address) for address in batch))
            logger.debug(
                "Batch complete",
                progress=min(start + ANALYSIS_BATCH_SIZE, len(addresses)),
                total=len(addresses),
                analyzed=stats.analyzed,
            )

    # ------------------------------------------------------------------
    # 4. Passes
    # ------------------------------------------------------------------

    def credential_pools(self) -> list[ApiKeyPool]:
        pools = [getattr(self.client, "pool", None), getattr(self.client, "holders_pool", None)]
        return [pool for pool in pools if pool is not None]

    def _cooldown_block(self) -> Optional[str]:
        """Reason to skip the pass, or ``None``. Elapsed cooldowns are cleared."""
        for pool in self.credential_pools():
            if pool.is_in_global_cooldown():
                return f"{pool.name} pool in global cooldown ({int(pool.global_cooldown_remaining())}s left)"
            if pool.ready_for_global_retry():
                pool.clear_global_cooldown(notify=True)
        return None

    async def _run_pass(self, stats: DiscoveryRunStats, body: Callable[[DiscoveryRunStats], Awaitable[None]]) -> DiscoveryRunStats:
        if self._running:
            logger.warning("Discovery already running, skipping", kind=stats.kind)
            stats.skipped_reason = "already running"
            stats.finish()
            return stats

        self._running = True
        try:
            reason = self._cooldown_block()
            if reason:
                stats.skipped_reason = reason
                logger.info("Pass skipped", kind=stats.kind, reason=reason)
            else:
                await body(stats)
        finally:
            self._running = False
            stats.finish()
            self._last_stats = stats
            self._last_run_at = stats.finished_at

        logger.info("Pass complete", **stats.as_log_fields())
        return stats

    async def run_discovery_pass(self, seed_tokens: Optional[Iterable[str]] = None) -> DiscoveryRunStats:
        seeds = [t for t in (seed_tokens if seed_tokens is not None else settings.seed_tokens) if t]

        async def body(stats: DiscoveryRunStats) -> None:
            stats.seed_tokens = len(seeds)
            if not seeds:
                stats.skipped_reason = "no seed tokens configured"
                logger.warning("No seed tokens configured, nothing to discover")
                return
            try:
                by_token = await self._collect_holders(seeds)
            except PoolExhausted as exc:
                stats.aborted = True
                logger.error("API credentials exhausted during holder enumeration", error=str(exc))
                return

            for token, holders in by_token.items():
                stats.watch_list_added += await self.store.add_watched_wallets(holders, source_token=token)

            candidates = sorted({address for holders in by_token.values() for address in holders})
            self.last_candidates = candidates
            stats.candidates = len(candidates)
            logger.info("Candidates collected", candidates=len(candidates), new_watched=stats.watch_list_added)
            await self._process_addresses(candidates, stats)

        return await self._run_pass(DiscoveryRunStats(kind="discovery"), body)

    async def refresh_watched_wallets(
        self,
        exclude: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> DiscoveryRunStats:
        """Re-score every watch-listed wallet so rankings stay current.

        Capital and activity filters are skipped: a watched wallet that has
        shrunk or gone quiet still gets its row updated.
        """
        skip = {a.lower() for a in (exclude or [])}

        async def body(stats: DiscoveryRunStats) -> None:
            addresses = [a for a in await self.store.list_watched_addresses(limit) if a not in skip]
            stats.candidates = len(addresses)
            await self._process_addresses(addresses, stats, handler=self.rescore_watched)

        return await self._run_pass(DiscoveryRunStats(kind="refresh"), body)

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_run": self._last_stats.as_log_fields() if self._last_stats else None,
            "pools": {pool.name: pool.snapshot() for pool in self.credential_pools()},
        }


def build_discovery_engine(notifier=None) -> WalletDiscoveryEngine:
    """Engine wired to settings-configured providers and the default store."""
    from services.market_data import MarketDataClient

    return WalletDiscoveryEngine(MarketDataClient.from_settings(notifier=notifier))
