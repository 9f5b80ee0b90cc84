from pydantic import BaseModel, ConfigDict, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum
import math

from utils.utcnow import parse_timestamp

STABLE_SYMBOLS = frozenset({"USDT", "USDC", "DAI", "TUSD", "USDP", "FDUSD", "BUSD"})

# Lots at or below this many units are treated as fully consumed.
LOT_DUST_UNITS = 1e-8

PNL_WINDOWS: dict[str, int] = {"1d": 1, "7d": 7, "30d": 30, "180d": 180, "365d": 365}


def _to_float(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"
    RECEIVE = "receive"
    SEND = "send"

    @property
    def opens_lot(self) -> bool:
        return self in (TradeSide.BUY, TradeSide.RECEIVE)


class Trade(BaseModel):
    """One asset movement in or out of a wallet, priced in USD."""

    model_config = ConfigDict(frozen=True)

    date: datetime
    side: TradeSide
    symbol: str
    units: float
    unit_price_usd: float

    @field_validator("symbol", mode="before")
    @classmethod
    def _normalize_symbol(cls, value: object) -> str:
        text = str(value or "").strip().upper()
        if not text:
            raise ValueError("symbol is required")
        return text

    @field_validator("side", mode="before")
    @classmethod
    def _normalize_side(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: object) -> datetime:
        parsed = parse_timestamp(value)
        if parsed is None:
            raise ValueError(f"unparseable trade date: {value!r}")
        return parsed

    @field_validator("units", "unit_price_usd")
    @classmethod
    def _finite_non_negative(cls, value: float) -> float:
        if not math.isfinite(value) or value < 0:
            raise ValueError("must be a finite, non-negative number")
        return value

    @property
    def value_usd(self) -> float:
        return self.units * self.unit_price_usd

    @classmethod
    def from_transfer(cls, transfer: dict, mined_at: object, operation_type: str) -> "Trade":
        """Build a trade from one transfer inside a provider transaction.

        ``direction`` in/out maps to buy/sell for swaps and receive/send for
        plain transfers. When the transfer carries no unit price it is derived
        from ``fiat_value``. Raises ``ValueError`` for anything unusable.
        """
        direction = str(transfer.get("direction") or "").lower()
        is_trade = str(operation_type or "").lower() == "trade"
        if direction == "in":
            side = TradeSide.BUY if is_trade else TradeSide.RECEIVE
        elif direction == "out":
            side = TradeSide.SELL if is_trade else TradeSide.SEND
        else:
            raise ValueError(f"unsupported transfer direction: {direction!r}")

        fungible = transfer.get("fungible_info") or {}
        symbol = fungible.get("symbol") or transfer.get("symbol")

        quantity = transfer.get("quantity")
        units = _to_float(quantity.get("float") if isinstance(quantity, dict) else quantity)
        if units is None:
            units = _to_float(transfer.get("value"))
        if units is None or units <= 0:
            raise ValueError("transfer has no positive quantity")

        price = _to_float(transfer.get("price"))
        if price is None:
            price_info = fungible.get("price")
            price = _to_float(price_info.get("value") if isinstance(price_info, dict) else price_info)
        if price is None or price <= 0:
            fiat_value = _to_float(transfer.get("fiat_value"))
            price = fiat_value / units if fiat_value and fiat_value > 0 else None
        if price is None:
            raise ValueError("transfer has no usable USD price")

        return cls(date=mined_at, side=side, symbol=symbol, units=units, unit_price_usd=price)


class Lot(BaseModel):
    """Units acquired at one cost basis, consumed FIFO on disposal."""

    symbol: str
    units: float
    cost_basis_price: float


class OpenPosition(BaseModel):
    symbol: str
    net_units: float
    average_entry_price: float

    @property
    def cost_usd(self) -> float:
        return self.net_units * self.average_entry_price


class PnlPoint(BaseModel):
    date: datetime
    cumulative_pnl: float
    is_current: bool = False


class LedgerSummary(BaseModel):
    realized_pnl: float = 0.0
    win_rate_percent: float = 0.0
    total_closed_trades: int = 0
    winning_trades: int = 0
    avg_trade_size_usd: float = 0.0
    total_cost_usd: float = 0.0
    open_positions: dict[str, OpenPosition] = {}
    # Sell units that found no lot to match (no short modelling).
    unmatched_sell_units: dict[str, float] = {}
    pnl_curve: list[PnlPoint] = []

    @property
    def open_position_count(self) -> int:
        return len(self.open_positions)


class WalletAnalysis(BaseModel):
    address: str
    total_value_usd: float = 0.0
    ledger_summary: LedgerSummary
    unrealized_pnl: float = 0.0
    total_pnl: float = 0.0
    pnl_percent: dict[str, float] = {}
    priced_symbols: list[str] = []
    unpriced_symbols: list[str] = []
    trade_count: int = 0
    analyzed_at: Optional[datetime] = None

    def pnl_series(self) -> list[float]:
        return [point.cumulative_pnl for point in self.ledger_summary.pnl_curve]


class WalletScore(BaseModel):
    consistency_score: float
    smart_score: float
    risk_level: str = "Medium"
