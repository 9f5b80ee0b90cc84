"""ORM tables for ranked wallets and the discovery watch list, plus the
shared async engine."""

import logging
from pathlib import Path

from sqlalchemy import Column, DateTime, Index, Integer, String, event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings
from models.types import UsdAmount
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class SuggestedWallet(Base):
    """Wallet that passed discovery filters, with its latest PnL profile and
    ranking scores. Upserted on address; the engine never deletes rows."""

    __tablename__ = "suggested_wallets"

    address = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    risk_level = Column(String, nullable=False, default="Medium")

    # Window returns, percent of capital deployed inside the window
    pnl_percent_1d = Column(UsdAmount, default=0.0)
    pnl_percent_7d = Column(UsdAmount, default=0.0)
    pnl_percent_30d = Column(UsdAmount, default=0.0)
    pnl_percent_180d = Column(UsdAmount, default=0.0)
    pnl_percent_365d = Column(UsdAmount, default=0.0)

    open_positions_count = Column(Integer, default=0)
    total_closed_trades = Column(Integer, default=0)
    win_rate = Column(UsdAmount, default=0.0)
    realized_pnl = Column(UsdAmount, default=0.0)
    unrealized_pnl = Column(UsdAmount, default=0.0)
    total_pnl = Column(UsdAmount, default=0.0)
    total_value = Column(UsdAmount, default=0.0)

    consistency_score = Column(UsdAmount, default=0.0)
    smart_score = Column(UsdAmount, default=0.0)

    created_at = Column(DateTime, default=utcnow)
    last_analyzed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_suggested_wallets_smart_score", "smart_score"),)


class WatchedWallet(Base):
    """Address seen among seed-token holders; re-scored on every refresh."""

    __tablename__ = "watched_wallets"

    address = Column(String, primary_key=True)
    source_token = Column(String, nullable=True)
    added_at = Column(DateTime, default=utcnow)


# ==================== ENGINE ====================

_IS_SQLITE = make_url(settings.DATABASE_URL).get_backend_name() == "sqlite"

# Discovery and refresh passes can overlap with ad-hoc readers; wait on
# locks instead of failing fast.
async_engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    connect_args={"timeout": 30} if _IS_SQLITE else {},
)

if _IS_SQLITE:

    @event.listens_for(async_engine.sync_engine, "connect")
    def _sqlite_on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
        finally:
            cursor.close()


AsyncSessionLocal = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


def _ensure_sqlite_parent(engine) -> None:
    if engine.url.get_backend_name() != "sqlite":
        return
    database = engine.url.database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


async def init_database():
    """Create the wallet tables if they do not exist yet."""
    _ensure_sqlite_parent(async_engine)
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready: %s", async_engine.url.render_as_string(hide_password=True))
