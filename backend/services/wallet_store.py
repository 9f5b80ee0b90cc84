"""Read/write contracts for ranked wallets and the watch list."""

from __future__ import annotations

import math
from typing import Iterable, Optional

from sqlalchemy import desc, func, select

from models.database import AsyncSessionLocal, SuggestedWallet, WatchedWallet
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("wallet_store")

_IN_CLAUSE_CHUNK = 500


class WalletStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def upsert_suggested_wallet(self, address: str, metrics: dict) -> SuggestedWallet:
        """Insert or overwrite the ranked record for ``address``."""
        address = address.lower()
        async with self._session_factory() as session:
            wallet = await session.get(SuggestedWallet, address)
            if wallet is None:
                wallet = SuggestedWallet(address=address, created_at=utcnow())
                session.add(wallet)

            for key, value in metrics.items():
                if key == "address":
                    continue
                if isinstance(value, float) and (math.isinf(value) or math.isnan(value)):
                    value = None
                if hasattr(wallet, key):
                    setattr(wallet, key, value)
            if wallet.name is None:
                wallet.name = address
            if "last_analyzed_at" not in metrics:
                wallet.last_analyzed_at = utcnow()

            await session.commit()
            return wallet

    async def get_suggested_wallet(self, address: str) -> Optional[SuggestedWallet]:
        async with self._session_factory() as session:
            return await session.get(SuggestedWallet, address.lower())

    async def list_suggested_wallets(self, limit: int = 100) -> list[SuggestedWallet]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SuggestedWallet).order_by(desc(SuggestedWallet.smart_score)).limit(limit)
            )
            return list(result.scalars().all())

    async def count_suggested_wallets(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(SuggestedWallet))
            return int(result.scalar() or 0)

    async def add_watched_wallets(self, addresses: Iterable[str], source_token: Optional[str] = None) -> int:
        """Append unseen addresses to the watch list; returns how many were new."""
        unique: list[str] = []
        seen: set[str] = set()
        for raw in addresses:
            address = str(raw or "").strip().lower()
            if address and address not in seen:
                seen.add(address)
                unique.append(address)
        if not unique:
            return 0

        async with self._session_factory() as session:
            existing: set[str] = set()
            # SQLite caps bound parameters per statement.
            for start in range(0, len(unique), _IN_CLAUSE_CHUNK):
                chunk = unique[start:start + _IN_CLAUSE_CHUNK]
                result = await session.execute(
                    select(WatchedWallet.address).where(WatchedWallet.address.in_(chunk))
                )
                existing.update(result.scalars().all())
            new_rows = [
                WatchedWallet(address=address, source_token=source_token, added_at=utcnow())
                for address in unique
                if address not in existing
            ]
            session.add_all(new_rows)
            await session.commit()

        if new_rows:
            logger.info("Watch list extended", added=len(new_rows), source_token=source_token)
        return len(new_rows)

    async def list_watched_addresses(self, limit: Optional[int] = None) -> list[str]:
        async with self._session_factory() as session:
            query = select(WatchedWallet.address).order_by(WatchedWallet.added_at, WatchedWallet.address)
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())


wallet_store = WalletStore()
