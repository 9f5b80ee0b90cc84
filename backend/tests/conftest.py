"""Shared fixtures for smart-wallet discovery tests."""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.ledger import Trade  # noqa: E402
from utils.utcnow import utcnow  # noqa: E402


class FakeClock:
    """Manually advanced epoch-seconds clock for the key pool."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self):
        self.alerts: list[tuple[str, str]] = []

    def notify(self, subject: str, body: str) -> None:
        self.alerts.append((subject, body))

    @property
    def subjects(self) -> list[str]:
        return [subject for subject, _ in self.alerts]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alerts():
    return RecordingNotifier()


@pytest.fixture
def make_trade():
    """Build a validated trade ``days_ago`` days back (ties broken by ``seq`` seconds)."""
    base = utcnow().replace(microsecond=0)

    def _make(side, symbol, units, price, days_ago=10.0, seq=0):
        return Trade(
            date=base - timedelta(days=days_ago) + timedelta(seconds=seq),
            side=side,
            symbol=symbol,
            units=units,
            unit_price_usd=price,
        )

    return _make


async def _no_sleep(_seconds):
    return None


@pytest.fixture
def no_sleep():
    return _no_sleep
