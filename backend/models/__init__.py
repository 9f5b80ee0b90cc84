from .ledger import (
    Trade,
    TradeSide,
    Lot,
    OpenPosition,
    PnlPoint,
    LedgerSummary,
    WalletAnalysis,
    WalletScore,
)

__all__ = [
    "Trade",
    "TradeSide",
    "Lot",
    "OpenPosition",
    "PnlPoint",
    "LedgerSummary",
    "WalletAnalysis",
    "WalletScore",
]
