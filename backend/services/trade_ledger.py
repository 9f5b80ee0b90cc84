"""FIFO lot reconstruction and PnL for a wallet's trade stream.

``build_ledger`` is pure: it only sees the trades it is handed.
``TradeLedgerEngine.analyze_wallet`` wires it to the market-data client for
history, portfolio value and marks.

Known limitation: positions are long-only. A sell/send larger than the lots
on hand closes what exists and the excess is dropped; it is reported per
symbol in ``LedgerSummary.unmatched_sell_units`` and earns no PnL.
"""

from __future__ import annotations

import math
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Iterable, Optional

from config import settings
from models.ledger import (
    LOT_DUST_UNITS,
    PNL_WINDOWS,
    LedgerSummary,
    Lot,
    OpenPosition,
    PnlPoint,
    Trade,
    WalletAnalysis,
)
from services.errors import DataUnavailable, MarketDataError, PoolExhausted
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("trade_ledger")


def _is_finite(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def build_ledger(trades: Iterable[Trade]) -> LedgerSummary:
    """Replay ``trades`` oldest first, matching disposals against lots FIFO."""
    ordered = sorted(trades, key=lambda trade: trade.date)

    lots: dict[str, deque[Lot]] = defaultdict(deque)
    unmatched: dict[str, float] = defaultdict(float)
    curve: list[PnlPoint] = []
    realized = 0.0
    total_cost = 0.0
    closed = 0
    wins = 0
    sell_value = 0.0

    for trade in ordered:
        if not (_is_finite(trade.units) and _is_finite(trade.unit_price_usd)):
            continue
        symbol = str(trade.symbol or "").strip().upper()
        if not symbol:
            continue
        units = abs(trade.units)
        price = trade.unit_price_usd

        if trade.side.opens_lot:
            if units <= LOT_DUST_UNITS:
                continue
            lots[symbol].append(Lot(symbol=symbol, units=units, cost_basis_price=price))
            total_cost += units * price
            continue

        queue = lots[symbol]
        remaining = units
        trade_pnl = 0.0
        while remaining > LOT_DUST_UNITS and queue:
            lot = queue[0]
            consumed = min(remaining, lot.units)
            trade_pnl += (price - lot.cost_basis_price) * consumed
            lot.units -= consumed
            remaining -= consumed
            if lot.units <= LOT_DUST_UNITS:
                queue.popleft()
        if remaining > LOT_DUST_UNITS:
            unmatched[symbol] += remaining

        realized += trade_pnl
        closed += 1
        if trade_pnl > 0:
            wins += 1
        sell_value += units * price
        curve.append(PnlPoint(date=trade.date, cumulative_pnl=realized))

    open_positions: dict[str, OpenPosition] = {}
    for symbol, queue in lots.items():
        net_units = sum(lot.units for lot in queue)
        if net_units <= LOT_DUST_UNITS:
            continue
        cost = sum(lot.units * lot.cost_basis_price for lot in queue)
        open_positions[symbol] = OpenPosition(
            symbol=symbol,
            net_units=net_units,
            average_entry_price=cost / net_units,
        )

    return LedgerSummary(
        realized_pnl=realized,
        win_rate_percent=(wins / closed * 100.0) if closed else 0.0,
        total_closed_trades=closed,
        winning_trades=wins,
        avg_trade_size_usd=(sell_value / closed) if closed else 0.0,
        total_cost_usd=total_cost,
        open_positions=open_positions,
        unmatched_sell_units=dict(unmatched),
        pnl_curve=curve,
    )


def unrealized_pnl(open_positions: dict[str, OpenPosition], prices: dict[str, float]) -> float:
    """Mark open positions to ``prices``; unpriced symbols contribute zero."""
    total = 0.0
    for symbol, position in open_positions.items():
        price = prices.get(symbol)
        if not _is_finite(price) or price <= 0 or position.net_units <= 0:
            continue
        total += (price - position.average_entry_price) * position.net_units
    return total


def window_pnl_percent(trades: Iterable[Trade], prices: dict[str, float], since: datetime) -> float:
    """Return on capital deployed by trades dated at or after ``since``."""
    in_window = [trade for trade in trades if trade.date >= since]
    if not in_window:
        return 0.0
    summary = build_ledger(in_window)
    if summary.total_cost_usd <= 0:
        return 0.0
    pnl = summary.realized_pnl + unrealized_pnl(summary.open_positions, prices)
    return pnl / summary.total_cost_usd * 100.0


class TradeLedgerEngine:
    """Deep analysis of one wallet: history -> ledger -> marks -> returns."""

    def __init__(self, client, trade_history_limit: Optional[int] = None):
        self.client = client
        self.trade_history_limit = trade_history_limit or settings.DISCOVERY_TRADE_HISTORY_LIMIT

    async def analyze_wallet(self, address: str, total_value_usd: Optional[float] = None) -> WalletAnalysis:
        """Full PnL profile for ``address``.

        Pass ``total_value_usd`` when the caller already fetched it.
        Raises ``DataUnavailable`` when no usable history exists.
        """
        address = address.lower()
        try:
            trades = await self.client.get_trade_history(address, self.trade_history_limit)
        except PoolExhausted:
            raise
        except MarketDataError as exc:
            raise DataUnavailable(address, f"trade history unavailable: {exc}") from exc
        if not trades:
            raise DataUnavailable(address, "no trade history")

        total_value = total_value_usd
        if total_value is None:
            try:
                total_value = await self.client.get_total_portfolio_value(address)
            except PoolExhausted:
                raise
            except MarketDataError as exc:
                logger.warning("Portfolio value unavailable", address=address, error=str(exc))
                total_value = 0.0

        summary = build_ledger(trades)

        # Window ledgers can hold symbols the full ledger already closed out.
        now = utcnow()
        window_starts = {label: now - timedelta(days=days) for label, days in PNL_WINDOWS.items()}
        symbols: set[str] = set(summary.open_positions)
        for since in window_starts.values():
            symbols.update(build_ledger(t for t in trades if t.date >= since).open_positions)

        prices: dict[str, float] = {}
        if symbols:
            try:
                prices = await self.client.get_current_prices(sorted(symbols))
            except PoolExhausted:
                raise
            except MarketDataError as exc:
                logger.warning("Price lookup failed, marking open positions at zero", address=address, error=str(exc))

        unpriced = sorted(s for s in symbols if s not in prices)
        if unpriced:
            logger.warning("Partial price data", address=address, unpriced=unpriced)

        unrealized = unrealized_pnl(summary.open_positions, prices)
        total_pnl = summary.realized_pnl + unrealized
        pnl_percent = {
            label: window_pnl_percent(trades, prices, since) for label, since in window_starts.items()
        }

        # The equity curve ends at today's mark so open exposure shows up.
        summary.pnl_curve.append(PnlPoint(date=now, cumulative_pnl=total_pnl, is_current=True))

        logger.debug(
            "Wallet analyzed",
            address=address,
            trades=len(trades),
            realized_pnl=round(summary.realized_pnl, 2),
            unrealized_pnl=round(unrealized, 2),
            open_positions=summary.open_position_count,
        )

        return WalletAnalysis(
            address=address,
            total_value_usd=total_value,
            ledger_summary=summary,
            unrealized_pnl=unrealized,
            total_pnl=total_pnl,
            pnl_percent=pnl_percent,
            priced_symbols=sorted(s for s in symbols if s in prices),
            unpriced_symbols=unpriced,
            trade_count=len(trades),
            analyzed_at=now,
        )
