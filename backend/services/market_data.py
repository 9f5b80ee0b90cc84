"""Thin fetch layer over the market-data provider, the holder-list source
and the secondary price source.

Every authenticated call takes its credential from an ``ApiKeyPool`` and
reports the outcome back: 429 throttles the key, 401/403 invalidates it,
network failures are retried without penalty. When the loop ends with every
key unavailable the pool enters its global cooldown and ``PoolExhausted`` is
raised so the caller can abandon the pass.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx

from config import settings
from models.ledger import STABLE_SYMBOLS, Trade
from services.errors import (
    MarketDataError,
    PoolExhausted,
    RateLimited,
    TransientError,
    Unauthorized,
    UpstreamError,
)
from services.key_pool import AlertSink, ApiKeyPool
from utils.logger import get_logger
from utils.rate_limiter import RateLimiter, endpoint_for_path, rate_limiter
from utils.retry import RetryConfig, calculate_delay, is_transient_error
from utils.utcnow import parse_timestamp, utcnow

logger = get_logger("market_data")

TRANSACTION_PAGE_SIZE = 100
MAX_TRANSACTION_PAGES = 10
TRADE_OPERATION_TYPES = "trade,send,receive"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Holder source reports throttling/bad keys inside a 200 body.
_HOLDERS_RATE_LIMIT_MARKERS = ("rate limit",)
_HOLDERS_INVALID_KEY_MARKERS = ("invalid api key", "missing/invalid api key")
_HOLDERS_EMPTY_MARKERS = ("no transactions found", "no records found")


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _next_cursor(payload: dict) -> Optional[str]:
    """Extract the ``page[after]`` cursor from a paginated response."""
    links = payload.get("links") or {}
    params = links.get("next_page_params") or {}
    page = params.get("page") if isinstance(params, dict) else None
    if isinstance(page, dict) and page.get("after"):
        return str(page["after"])
    next_url = links.get("next")
    if next_url:
        try:
            return httpx.URL(str(next_url)).params.get("page[after]")
        except (httpx.InvalidURL, TypeError, ValueError):
            return None
    return None


def _holders_body_status(payload: Any) -> Optional[int]:
    """Translate Etherscan-style ``status: "0"`` bodies into HTTP semantics."""
    if not isinstance(payload, dict) or str(payload.get("status")) != "0":
        return None
    text = f"{payload.get('message') or ''} {payload.get('result') or ''}".lower()
    if any(marker in text for marker in _HOLDERS_EMPTY_MARKERS):
        return None
    if any(marker in text for marker in _HOLDERS_RATE_LIMIT_MARKERS):
        return 429
    if any(marker in text for marker in _HOLDERS_INVALID_KEY_MARKERS):
        return 401
    return 502


def transaction_trades(transaction: dict) -> tuple[list[Trade], int]:
    """Validated trades for one provider transaction, plus a count of
    transfers that had to be skipped. Stablecoin legs are ignored."""
    attributes = transaction.get("attributes") or {}
    mined_at = attributes.get("mined_at") or attributes.get("created_at")
    operation_type = attributes.get("operation_type") or "trade"
    trades: list[Trade] = []
    skipped = 0
    for transfer in attributes.get("transfers") or []:
        if not isinstance(transfer, dict):
            skipped += 1
            continue
        symbol = str((transfer.get("fungible_info") or {}).get("symbol") or transfer.get("symbol") or "")
        if symbol.strip().upper() in STABLE_SYMBOLS:
            continue
        try:
            trades.append(Trade.from_transfer(transfer, mined_at, operation_type))
        except ValueError:
            skipped += 1
    return trades, skipped


class MarketDataClient:
    """Client for wallet history, prices, portfolio value and token holders"""

    def __init__(
        self,
        pool: ApiKeyPool,
        holders_pool: Optional[ApiKeyPool] = None,
        *,
        base_url: Optional[str] = None,
        holders_url: Optional[str] = None,
        secondary_price_url: Optional[str] = None,
        secondary_price_ids: Optional[dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pool = pool
        self.holders_pool = holders_pool
        self.base_url = (base_url or settings.MARKET_DATA_API_URL).rstrip("/")
        self.holders_url = holders_url or settings.HOLDERS_API_URL
        self.secondary_price_url = (secondary_price_url or settings.SECONDARY_PRICE_API_URL).rstrip("/")
        self.secondary_price_ids = (
            secondary_price_ids if secondary_price_ids is not None else settings.secondary_price_ids
        )
        self.timeout_seconds = timeout_seconds or settings.API_TIMEOUT_SECONDS
        self._max_attempts = max_attempts if max_attempts is not None else settings.MAX_RETRY_ATTEMPTS
        self._client = http_client
        self._limiter = limiter or rate_limiter
        self._sleep = sleep

    @classmethod
    def from_settings(cls, notifier: Optional[AlertSink] = None) -> "MarketDataClient":
        pool = ApiKeyPool.from_settings(settings.market_data_keys, notifier=notifier, name="market-data")
        holders_pool = ApiKeyPool.from_settings(settings.holders_keys, notifier=notifier, name="holders")
        return cls(pool, holders_pool)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ==================== REQUEST LOOP ====================

    def _retry_config(self, pool: ApiKeyPool) -> RetryConfig:
        return RetryConfig.for_key_count(
            len(pool),
            configured_attempts=self._max_attempts,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )

    async def _request(
        self,
        pool: Optional[ApiKeyPool],
        provider: str,
        url: str,
        path: str,
        params: dict[str, Any],
        authenticate: Callable[[str, dict[str, Any]], dict[str, Any]],
        body_status: Optional[Callable[[Any], Optional[int]]] = None,
    ) -> Any:
        """GET ``url`` with rotating credentials; returns the decoded JSON."""
        if pool is None or not pool.has_keys:
            raise UpstreamError(f"No {provider} API keys configured", provider=provider)
        if pool.is_in_global_cooldown():
            raise PoolExhausted(
                f"{provider} pool cooling down for {int(pool.global_cooldown_remaining())}s",
                provider=provider,
            )

        client = await self._get_client()
        config = self._retry_config(pool)
        endpoint = endpoint_for_path(provider, path)
        last_error: Optional[MarketDataError] = None

        for attempt in range(config.max_attempts):
            credential = pool.next()
            await self._limiter.acquire(endpoint)
            request_kwargs = authenticate(credential.secret, dict(params))

            try:
                response = await client.get(url, **request_kwargs)
            except httpx.HTTPError as exc:
                if not is_transient_error(exc, config):
                    raise UpstreamError(
                        f"{provider} request failed: {exc}", provider=provider, credential_id=credential.id
                    ) from exc
                last_error = TransientError(
                    f"{provider} request failed: {type(exc).__name__}",
                    provider=provider,
                    credential_id=credential.id,
                )
                logger.warning(
                    "Transient upstream failure",
                    provider=provider,
                    path=path,
                    key_id=credential.id,
                    attempt=attempt + 1,
                    error=type(exc).__name__,
                )
                if attempt < config.max_attempts - 1:
                    await self._sleep(calculate_delay(attempt, config))
                continue

            status = response.status_code
            payload: Any = None
            if 200 <= status < 300:
                try:
                    payload = response.json()
                except ValueError as exc:
                    raise UpstreamError(
                        f"{provider} returned unreadable JSON", provider=provider, status_code=status
                    ) from exc
                if body_status is not None:
                    status = body_status(payload) or status

            if 200 <= status < 300:
                return payload

            detail = f"HTTP {status} on {path}"
            if status == 429:
                pool.report_throttled(credential.id, detail)
                last_error = RateLimited(detail, provider=provider, status_code=status, credential_id=credential.id)
            elif status in (401, 403):
                pool.report_invalid(credential.id, detail)
                last_error = Unauthorized(detail, provider=provider, status_code=status, credential_id=credential.id)
            elif status >= 500:
                last_error = UpstreamError(detail, provider=provider, status_code=status, credential_id=credential.id)
                logger.warning("Upstream server error", provider=provider, path=path, status=status)
                if attempt < config.max_attempts - 1:
                    await self._sleep(calculate_delay(attempt, config))
                continue
            else:
                raise UpstreamError(detail, provider=provider, status_code=status, credential_id=credential.id)

            if pool.all_unavailable():
                break

        if pool.all_unavailable():
            reason = str(last_error) if last_error else "all credentials unavailable"
            pool.enter_global_cooldown(reason)
            raise PoolExhausted(f"{provider}: {reason}", provider=provider) from last_error

        if last_error is None:
            last_error = UpstreamError(f"{provider} request made no attempts", provider=provider)
        raise last_error

    async def _market_get(self, path: str, params: dict[str, Any]) -> dict:
        def basic_auth(secret: str, query: dict[str, Any]) -> dict[str, Any]:
            return {"params": query, "auth": (secret, ""), "headers": {"accept": "application/json"}}

        payload = await self._request(
            self.pool, "market-data", f"{self.base_url}{path}", path, params, basic_auth
        )
        if not isinstance(payload, dict):
            raise UpstreamError(f"Unexpected payload shape for {path}", provider="market-data")
        return payload

    # ==================== TRADE HISTORY ====================

    async def _fetch_transactions(self, address: str, max_count: int) -> list[dict]:
        transactions: list[dict] = []
        cursor: Optional[str] = None
        for _ in range(MAX_TRANSACTION_PAGES):
            params: dict[str, Any] = {
                "filter[operation_types]": TRADE_OPERATION_TYPES,
                "currency": "usd",
                "page[size]": TRANSACTION_PAGE_SIZE,
            }
            if cursor:
                params["page[after]"] = cursor
            payload = await self._market_get(f"/wallets/{address}/transactions", params)
            items = [item for item in (payload.get("data") or []) if isinstance(item, dict)]
            transactions.extend(items)
            cursor = _next_cursor(payload)
            if not cursor or not items or len(transactions) >= max_count:
                break
        return transactions

    async def get_trade_history(self, address: str, max_count: int = 500) -> list[Trade]:
        """Validated trades for ``address``, oldest first.

        At most ``max_count`` of the most recent trades are kept; fewer may be
        returned when the wallet has a short history.
        """
        transactions = await self._fetch_transactions(address, max_count)
        trades: list[Trade] = []
        skipped = 0
        for transaction in transactions:
            parsed, bad = transaction_trades(transaction)
            trades.extend(parsed)
            skipped += bad
        if skipped:
            logger.debug("Skipped malformed transfers", address=address, skipped=skipped)

        trades.sort(key=lambda trade: trade.date)
        if len(trades) > max_count:
            trades = trades[-max_count:]
        return trades

    async def get_recent_trade_count(self, address: str, window_days: int = 30, max_count: int = 50) -> int:
        """Number of trading transactions inside the last ``window_days``."""
        cutoff = utcnow() - timedelta(days=window_days)
        transactions = await self._fetch_transactions(address, max_count)
        count = 0
        for transaction in transactions[:max_count]:
            attributes = transaction.get("attributes") or {}
            mined_at = parse_timestamp(attributes.get("mined_at") or attributes.get("created_at"))
            if mined_at is None or mined_at < cutoff:
                continue
            trades, _ = transaction_trades(transaction)
            if trades:
                count += 1
        return count

    # ==================== PORTFOLIO ====================

    async def get_total_portfolio_value(self, address: str) -> float:
        payload = await self._market_get(f"/wallets/{address}/portfolio", {"currency": "usd"})
        attributes = (payload.get("data") or {}).get("attributes") or {}
        total = attributes.get("total") or {}
        value = _as_float(total.get("positions") if isinstance(total, dict) else total)
        if value is None:
            raise UpstreamError(f"Portfolio response for {address} has no total", provider="market-data")
        return value

    # ==================== PRICES ====================

    async def _primary_price(self, symbol: str) -> Optional[float]:
        payload = await self._market_get(
            "/fungibles", {"filter[query]": symbol, "currency": "usd", "page[size]": 10}
        )
        items = [item for item in (payload.get("data") or []) if isinstance(item, dict)]
        exact = [
            item
            for item in items
            if str((item.get("attributes") or {}).get("symbol") or "").upper() == symbol
        ]
        for item in exact or items[:1]:
            attributes = item.get("attributes") or {}
            market_data = attributes.get("market_data") or {}
            price_info = attributes.get("price")
            price = _as_float(market_data.get("price"))
            if price is None and isinstance(price_info, dict):
                price = _as_float(price_info.get("value"))
            elif price is None:
                price = _as_float(price_info)
            if price is not None and price > 0:
                return price
        return None

    async def _secondary_prices(self, symbols: Iterable[str]) -> dict[str, float]:
        id_by_symbol = {s: self.secondary_price_ids[s] for s in symbols if s in self.secondary_price_ids}
        if not id_by_symbol:
            return {}

        client = await self._get_client()
        await self._limiter.acquire(endpoint_for_path("secondary_prices", "/simple/price"))
        try:
            response = await client.get(
                f"{self.secondary_price_url}/simple/price",
                params={"ids": ",".join(sorted(set(id_by_symbol.values()))), "vs_currencies": "usd"},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Secondary price lookup failed", symbols=sorted(id_by_symbol), error=str(exc))
            return {}

        prices: dict[str, float] = {}
        for symbol, coin_id in id_by_symbol.items():
            entry = payload.get(coin_id) if isinstance(payload, dict) else None
            price = _as_float(entry.get("usd")) if isinstance(entry, dict) else None
            if price is not None and price > 0:
                prices[symbol] = price
        return prices

    async def get_current_prices(self, symbols: Iterable[str]) -> dict[str, float]:
        """USD price per symbol; symbols nobody could price are left out.

        Per-symbol provider failures only cost that symbol. ``PoolExhausted``
        still propagates.
        """
        wanted = sorted({str(s).strip().upper() for s in symbols if str(s or "").strip()})
        prices: dict[str, float] = {}
        for symbol in wanted:
            try:
                price = await self._primary_price(symbol)
            except PoolExhausted:
                raise
            except MarketDataError as exc:
                logger.warning("Primary price lookup failed", symbol=symbol, error=str(exc))
                continue
            if price is not None:
                prices[symbol] = price

        missing = [symbol for symbol in wanted if symbol not in prices]
        if missing:
            fallback = await self._secondary_prices(missing)
            if fallback:
                logger.info("Filled prices from secondary source", symbols=sorted(fallback))
            prices.update(fallback)
        return prices

    # ==================== HOLDERS ====================

    async def get_token_holders(self, token_address: str, page: int = 1, page_size: int = 100) -> list[str]:
        """Distinct addresses seen moving ``token_address``, most recent first."""

        def api_key_param(secret: str, query: dict[str, Any]) -> dict[str, Any]:
            query["apikey"] = secret
            return {"params": query}

        params = {
            "module": "account",
            "action": "tokentx",
            "contractaddress": token_address,
            "page": page,
            "offset": page_size,
            "sort": "desc",
        }
        payload = await self._request(
            self.holders_pool,
            "holders",
            self.holders_url,
            "/tokentx",
            params,
            api_key_param,
            body_status=_holders_body_status,
        )
        rows = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            return []

        holders: list[str] = []
        seen: set[str] = set()
        for row in rows:
            if not isinstance(row, dict):
                continue
            for key in ("to", "from"):
                address = str(row.get(key) or "").strip().lower()
                if not address or address == ZERO_ADDRESS or address in seen:
                    continue
                seen.add(address)
                holders.append(address)
        return holders[:page_size]
