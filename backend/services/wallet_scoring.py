"""
Wallet Scoring
==============

Turns a ``WalletAnalysis`` into ranking scores:

    consistency = clamp(1 - sigma / k, 0, 1) * 100
        sigma: population std-dev of the cumulative PnL curve
        k:     max(100, |last cumulative value|)

    smart score = w_pnl * pnl% (30d) + w_win * win rate % + w_cons * consistency

Weights come from settings so the blend can be tuned without code changes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from config import settings
from models.ledger import WalletAnalysis, WalletScore
from models.types import round_usd
from utils.utcnow import utcnow

CONSISTENCY_SCALE_FLOOR = 100.0

RISK_LOW = "Low"
RISK_MEDIUM = "Medium"
RISK_HIGH = "High"


@dataclass(frozen=True)
class ScoringWeights:
    pnl_30d: float = 0.4
    win_rate: float = 0.3
    consistency: float = 0.3

    @classmethod
    def from_settings(cls) -> "ScoringWeights":
        return cls(
            pnl_30d=settings.SMART_SCORE_WEIGHT_PNL_30D,
            win_rate=settings.SMART_SCORE_WEIGHT_WIN_RATE,
            consistency=settings.SMART_SCORE_WEIGHT_CONSISTENCY,
        )


def _population_std_dev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((x - mean) ** 2 for x in values) / len(values)
    return math.sqrt(variance)


def consistency_score(series: Sequence[float]) -> float:
    """0-100 smoothness of a cumulative PnL curve; higher is smoother."""
    values = [float(v) for v in series if v is not None and math.isfinite(v)]
    if not values:
        return 100.0
    sigma = _population_std_dev(values)
    scale = max(CONSISTENCY_SCALE_FLOOR, abs(values[-1]))
    return max(0.0, min(1.0, 1.0 - sigma / scale)) * 100.0


def smart_score(
    pnl_percent_30d: float,
    win_rate_percent: float,
    consistency: float,
    weights: Optional[ScoringWeights] = None,
) -> float:
    weights = weights or ScoringWeights.from_settings()
    return (
        weights.pnl_30d * pnl_percent_30d
        + weights.win_rate * win_rate_percent
        + weights.consistency * consistency
    )


def classify_risk_level(consistency: float, win_rate_percent: float) -> str:
    if consistency >= 70.0 and win_rate_percent >= 55.0:
        return RISK_LOW
    if consistency < 40.0:
        return RISK_HIGH
    return RISK_MEDIUM


def score(analysis: WalletAnalysis, weights: Optional[ScoringWeights] = None) -> WalletScore:
    summary = analysis.ledger_summary
    consistency = consistency_score(analysis.pnl_series())
    composite = smart_score(
        analysis.pnl_percent.get("30d", 0.0),
        summary.win_rate_percent,
        consistency,
        weights,
    )
    return WalletScore(
        consistency_score=consistency,
        smart_score=composite,
        risk_level=classify_risk_level(consistency, summary.win_rate_percent),
    )


def build_suggested_wallet_metrics(analysis: WalletAnalysis, wallet_score: WalletScore) -> dict:
    """Row values for ``SuggestedWallet``, rounded for presentation."""
    summary = analysis.ledger_summary
    pct = analysis.pnl_percent
    return {
        "name": analysis.address,
        "risk_level": wallet_score.risk_level,
        "pnl_percent_1d": round_usd(pct.get("1d", 0.0)),
        "pnl_percent_7d": round_usd(pct.get("7d", 0.0)),
        "pnl_percent_30d": round_usd(pct.get("30d", 0.0)),
        "pnl_percent_180d": round_usd(pct.get("180d", 0.0)),
        "pnl_percent_365d": round_usd(pct.get("365d", 0.0)),
        "open_positions_count": summary.open_position_count,
        "total_closed_trades": summary.total_closed_trades,
        "win_rate": round_usd(summary.win_rate_percent),
        "realized_pnl": round_usd(summary.realized_pnl),
        "unrealized_pnl": round_usd(analysis.unrealized_pnl),
        "total_pnl": round_usd(analysis.total_pnl),
        "total_value": round_usd(analysis.total_value_usd),
        "consistency_score": round_usd(wallet_score.consistency_score),
        "smart_score": round_usd(wallet_score.smart_score),
        "last_analyzed_at": analysis.analyzed_at or utcnow(),
    }
