import sys
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import Base  # noqa: E402
from services.wallet_store import WalletStore  # noqa: E402


async def _build_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'wallets.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, WalletStore(session_factory)


class TestSuggestedWallets:
    @pytest.mark.asyncio
    async def test_upsert_twice_keeps_one_row_with_latest_values(self, tmp_path):
        engine, store = await _build_store(tmp_path)
        try:
            await store.upsert_suggested_wallet("0xABC", {"smart_score": 10.0, "win_rate": 40.0})
            await store.upsert_suggested_wallet("0xabc", {"smart_score": 55.5, "win_rate": 62.25})

            assert await store.count_suggested_wallets() == 1
            wallet = await store.get_suggested_wallet("0xabc")
            assert wallet.smart_score == 55.5
            assert wallet.win_rate == 62.25
            assert wallet.name == "0xabc"
            assert wallet.risk_level == "Medium"
            assert wallet.last_analyzed_at is not None
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_non_finite_values_are_stored_as_null(self, tmp_path):
        engine, store = await _build_store(tmp_path)
        try:
            await store.upsert_suggested_wallet("0xabc", {"total_pnl": float("nan"), "total_value": float("inf")})

            wallet = await store.get_suggested_wallet("0xabc")
            assert wallet.total_pnl is None
            assert wallet.total_value is None
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_amounts_are_rounded_to_cents(self, tmp_path):
        engine, store = await _build_store(tmp_path)
        try:
            await store.upsert_suggested_wallet("0xabc", {"realized_pnl": 1234.565})

            wallet = await store.get_suggested_wallet("0xabc")
            assert wallet.realized_pnl == 1234.57
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_list_orders_by_smart_score(self, tmp_path):
        engine, store = await _build_store(tmp_path)
        try:
            for address, smart in (("0xa", 20.0), ("0xb", 75.0), ("0xc", 50.0)):
                await store.upsert_suggested_wallet(address, {"smart_score": smart})

            ranked = await store.list_suggested_wallets(limit=2)

            assert [w.address for w in ranked] == ["0xb", "0xc"]
        finally:
            await engine.dispose()


class TestWatchList:
    @pytest.mark.asyncio
    async def test_watch_list_deduplicates(self, tmp_path):
        engine, store = await _build_store(tmp_path)
        try:
            added = await store.add_watched_wallets(["0xA", "0xa", "0xb", ""], source_token="0xt1")
            added_again = await store.add_watched_wallets(["0xb", "0xc"], source_token="0xt2")

            assert added == 2
            assert added_again == 1
            assert sorted(await store.list_watched_addresses()) == ["0xa", "0xb", "0xc"]
            assert len(await store.list_watched_addresses(limit=2)) == 2
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_empty_input_adds_nothing(self, tmp_path):
        engine, store = await _build_store(tmp_path)
        try:
            assert await store.add_watched_wallets([]) == 0
            assert await store.list_watched_addresses() == []
        finally:
            await engine.dispose()
