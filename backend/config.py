"""Process-wide settings, read from the environment and optional .env files.

Every tunable the discovery pipeline uses lives here so a deployment can
change key lists, cooldowns, filter thresholds and score weights without
touching code.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """The repo root is the directory that holds ``backend/``."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "smart_wallets.db").resolve()
_SQLITE_URL_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_LOGGER = logging.getLogger(__name__)

_DEFAULT_SYMBOL_IDS = (
    "ETH:ethereum,WETH:weth,WBTC:wrapped-bitcoin,BTC:bitcoin,UNI:uniswap,"
    "AVAX:avalanche-2,FET:fetch-ai,MNT:mantle,ZRO:layerzero,ARB:arbitrum,"
    "OP:optimism,SOL:solana,USDT:tether,USDC:usd-coin"
)


def split_csv(value: Optional[str]) -> list[str]:
    """Split a comma separated env value into trimmed, non-empty items."""
    if not value:
        return []
    return [item.strip() for item in str(value).split(",") if item.strip()]


def _clean_env_text(value: object) -> Optional[str]:
    """Strip whitespace and stray quotes that env files tend to carry."""
    if value is None:
        return None
    return str(value).strip().strip("\"'").strip()


def _anchor_sqlite_url(url: str) -> str:
    """Pin relative SQLite paths to the repo root so the worker's cwd never
    decides which database file gets opened."""
    for prefix in _SQLITE_URL_PREFIXES:
        if not url.startswith(prefix):
            continue
        raw_path = url[len(prefix):]
        if not raw_path:
            return url
        if raw_path.lstrip("/") == ":memory:":
            return f"{prefix}:memory:"
        path = Path(raw_path)
        if not path.is_absolute():
            path = _PROJECT_ROOT / path
        return f"{prefix}{path.resolve()}"
    return url


class Settings(BaseSettings):
    # Market-data provider (wallet transactions, portfolio, fungible prices)
    MARKET_DATA_API_URL: str = "https://api.zerion.io/v1"
    MARKET_DATA_API_KEYS: str = ""

    # Token-holder enumeration (Etherscan-compatible tokentx listing)
    HOLDERS_API_URL: str = "https://api.etherscan.io/api"
    HOLDERS_API_KEYS: str = ""

    # Secondary price source, consulted only for symbols the primary misses
    SECONDARY_PRICE_API_URL: str = "https://api.coingecko.com/api/v3"
    SECONDARY_PRICE_SYMBOL_IDS: str = _DEFAULT_SYMBOL_IDS

    # Key pool cooldowns
    API_KEY_COOLDOWN_SECONDS: float = 120.0
    API_KEY_INVALID_COOLDOWN_SECONDS: float = 24 * 60 * 60.0
    API_KEY_NOTIFY_ON_THROTTLE: bool = True
    API_KEY_NOTIFY_COOLDOWN_SECONDS: float = 300.0
    API_GLOBAL_COOLDOWN_SECONDS: float = 60 * 60.0

    # HTTP behaviour
    API_TIMEOUT_SECONDS: float = 8.0
    MAX_RETRY_ATTEMPTS: int = 0  # 0 = one attempt per key plus one
    RETRY_BASE_DELAY: float = 0.5
    RETRY_MAX_DELAY: float = 8.0

    # Discovery
    SEED_TOKEN_ADDRESSES: str = ""
    DISCOVERY_RUN_INTERVAL_MINUTES: int = 60
    DISCOVERY_HOLDERS_PER_TOKEN: int = 200
    DISCOVERY_HOLDER_PAGE_SIZE: int = 200
    DISCOVERY_HOLDER_PAGE_DELAY_SECONDS: float = 0.6
    DISCOVERY_DELAY_BETWEEN_WALLETS: float = 0.25
    DISCOVERY_MAX_CONCURRENCY: int = 1
    DISCOVERY_CAPITAL_FLOOR_USD: float = 50_000.0
    DISCOVERY_MIN_RECENT_TRADES: int = 4
    DISCOVERY_ACTIVITY_WINDOW_DAYS: int = 30
    DISCOVERY_ACTIVITY_SAMPLE_SIZE: int = 50
    DISCOVERY_TRADE_HISTORY_LIMIT: int = 500
    DISCOVERY_REFRESH_WATCHED: bool = True

    # Smart score weighting
    SMART_SCORE_WEIGHT_PNL_30D: float = 0.4
    SMART_SCORE_WEIGHT_WIN_RATE: float = 0.3
    SMART_SCORE_WEIGHT_CONSISTENCY: float = 0.3

    # Notifications
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None
    ALERT_QUEUE_MAXSIZE: int = 100

    # Storage and logging
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    @field_validator("MARKET_DATA_API_URL", "HOLDERS_API_URL", "SECONDARY_PRICE_API_URL", mode="before")
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        text = _clean_env_text(value)
        return text.rstrip("/") if text else text

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        text = _clean_env_text(value)
        return _anchor_sqlite_url(text) if text else text

    @property
    def market_data_keys(self) -> list[str]:
        return split_csv(self.MARKET_DATA_API_KEYS)

    @property
    def holders_keys(self) -> list[str]:
        return split_csv(self.HOLDERS_API_KEYS)

    @property
    def seed_tokens(self) -> list[str]:
        return [token.lower() for token in split_csv(self.SEED_TOKEN_ADDRESSES)]

    @property
    def secondary_price_ids(self) -> dict[str, str]:
        """Symbol -> secondary source coin id, parsed from ``SYM:id`` pairs."""
        mapping: dict[str, str] = {}
        for pair in split_csv(self.SECONDARY_PRICE_SYMBOL_IDS):
            symbol, sep, coin_id = pair.partition(":")
            if not sep or not symbol.strip() or not coin_id.strip():
                _LOGGER.warning("Ignoring malformed price id mapping: %s", pair)
                continue
            mapping[symbol.strip().upper()] = coin_id.strip()
        return mapping

    class Config:
        # backend/.env wins over the repo-root .env when both exist.
        env_file = (str(_PROJECT_ROOT / ".env"), str(_BACKEND_DIR / ".env"))
        env_file_encoding = "utf-8"


settings = Settings()
