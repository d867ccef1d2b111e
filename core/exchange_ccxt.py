"""
gridtrader Core: ccxt Spot Broker

Thin spot-market client over ccxt. Market data and balance reads are retried
with exponential backoff on network errors; market orders are sent exactly
once. Every number crosses into Decimal here.
"""

import logging
import random
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import ccxt

from core.exceptions import CriticalDataUnavailable, OrderExecutionError
from core.models import OrderFill
from core.numeric import ZERO, to_decimal, to_float

logger = logging.getLogger(__name__)

DEFAULT_MIN_ORDER = Decimal("10")
CRASH_TIMEFRAME = "15m"
CRASH_TIMEFRAME_MINUTES = 15


class CcxtBroker:
    """
    Spot broker over a ccxt exchange instance.

    Args:
        exchange_id: ccxt exchange id (e.g. 'binance')
        api_key / api_secret: credentials, None for public-only access
        sandbox: route to the exchange testnet
        quote_currency: currency balances and order sizes are quoted in
        timeout_ms: per-request timeout passed to ccxt
        max_retries: attempts for read calls (orders are never retried)
        retry_delay_seconds: backoff base
        client: pre-built ccxt exchange (tests)
    """

    def __init__(
        self,
        exchange_id: str = "binance",
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        sandbox: bool = True,
        quote_currency: str = "USDT",
        timeout_ms: int = 30000,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        client=None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.exchange_id = exchange_id.lower()
        self.sandbox = sandbox
        self.quote_currency = quote_currency
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_seconds = float(retry_delay_seconds)
        self._sleep = sleep or time.sleep
        self._initialized = False

        if client is None:
            exchange_class = getattr(ccxt, self.exchange_id, None)
            if exchange_class is None:
                raise ValueError(f"Unknown exchange: {self.exchange_id}")
            params: Dict[str, Any] = {
                "enableRateLimit": True,
                "timeout": int(timeout_ms),
                "options": {"defaultType": "spot"},
            }
            if api_key:
                params["apiKey"] = api_key
                params["secret"] = api_secret or ""
            client = exchange_class(params)
        self.client = client

        logger.info(
            f"CcxtBroker created for {self.exchange_id} (sandbox={sandbox}, "
            f"authenticated={bool(api_key)}, quote={quote_currency})"
        )

    @classmethod
    def from_config(cls, exchange_cfg: Dict, mode: str, api_key: Optional[str], api_secret: Optional[str]) -> "CcxtBroker":
        return cls(
            exchange_id=exchange_cfg.get("id", "binance"),
            api_key=api_key,
            api_secret=api_secret,
            sandbox=str(mode).upper() != "LIVE",
            quote_currency=exchange_cfg.get("quote_currency", "USDT"),
            timeout_ms=int(exchange_cfg.get("timeout_ms", 30000)),
            max_retries=int(exchange_cfg.get("max_retries", 3)),
            retry_delay_seconds=float(exchange_cfg.get("retry_delay_seconds", 1.0)),
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Load markets and verify credentials with a balance read."""
        if self._initialized:
            return
        logger.info(f"Initializing exchange connection (sandbox={self.sandbox})")
        if self.sandbox:
            self.client.set_sandbox_mode(True)
        self._with_retry("load_markets", self.client.load_markets)
        self._with_retry("fetch_balance", self.client.fetch_balance)
        self._initialized = True
        logger.info("Exchange initialized successfully")

    def is_initialized(self) -> bool:
        return self._initialized

    def _with_retry(self, name: str, fn: Callable, *args, **kwargs):
        """
        Call fn, retrying on ccxt network errors with exponential backoff.

        Exchange errors (bad symbol, auth) are raised immediately.
        """
        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return fn(*args, **kwargs)
            except ccxt.NetworkError as e:
                logger.warning(f"Network error on {name}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e
            except ccxt.ExchangeError as e:
                logger.error(f"Exchange error on {name}: {e}")
                raise

            if attempt < self.max_retries - 1:
                backoff = self.retry_delay_seconds * (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying {name} in {backoff:.1f}s...")
                self._sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {name}")
        raise last_exception

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def get_current_price(self, symbol: str) -> Decimal:
        try:
            ticker = self._with_retry("fetch_ticker", self.client.fetch_ticker, symbol)
        except ccxt.BaseError as e:
            logger.error(f"Failed to fetch price for {symbol}: {e}")
            raise CriticalDataUnavailable(f"price:{symbol}", e) from e

        last = ticker.get("last") if ticker else None
        if not last:
            raise CriticalDataUnavailable(f"price:{symbol}", ValueError(f"No price available for {symbol}"))
        price = to_decimal(last)
        logger.debug(f"Fetched current price {symbol}: {price}")
        return price

    def fetch_recent_prices(self, symbol: str, window_minutes: int) -> List[Tuple[Decimal, datetime]]:
        """Closes of the 15m candles covering the window, oldest first."""
        since = datetime.now(timezone.utc) - timedelta(minutes=window_minutes)
        limit = max(2, window_minutes // CRASH_TIMEFRAME_MINUTES + 1)
        candles = self._with_retry(
            "fetch_ohlcv",
            self.client.fetch_ohlcv,
            symbol,
            CRASH_TIMEFRAME,
            int(since.timestamp() * 1000),
            limit,
        )
        return [
            (to_decimal(candle[4]), datetime.fromtimestamp(candle[0] / 1000, tz=timezone.utc))
            for candle in candles or []
            if candle[4] is not None
        ]

    def fetch_volume_ratio(self, symbol: str, lookback: int) -> Optional[float]:
        """Last closed 1h volume over the mean of the ``lookback`` candles before it."""
        candles = self._with_retry("fetch_ohlcv", self.client.fetch_ohlcv, symbol, "1h", None, lookback + 2)
        # Last candle is still forming
        closed = (candles or [])[:-1]
        if len(closed) < lookback + 1:
            return None
        last_volume = float(closed[-1][5] or 0)
        previous = [float(c[5] or 0) for c in closed[-(lookback + 1):-1]]
        average = sum(previous) / len(previous)
        if average <= 0:
            return None
        return last_volume / average

    def get_min_order_size(self, symbol: str) -> Decimal:
        try:
            market = self.client.market(symbol)
            min_cost = ((market.get("limits") or {}).get("cost") or {}).get("min")
            return to_decimal(min_cost) if min_cost else DEFAULT_MIN_ORDER
        except (ccxt.BaseError, KeyError, ValueError) as e:
            logger.warning(f"Could not get min order size for {symbol}, using default: {e}")
            return DEFAULT_MIN_ORDER

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def _fetch_balance(self) -> Dict:
        try:
            return self._with_retry("fetch_balance", self.client.fetch_balance)
        except ccxt.BaseError as e:
            logger.error(f"Failed to fetch balance: {e}")
            raise CriticalDataUnavailable("balance", e) from e

    def get_balance(self, currency: Optional[str] = None) -> Decimal:
        currency = currency or self.quote_currency
        balances = self._fetch_balance()
        free = (balances.get(currency) or {}).get("free") or 0
        balance = to_decimal(free)
        logger.debug(f"Fetched balance {currency}: {balance}")
        return balance

    def get_total_balance_in_usdt(self, symbols: List[str]) -> Decimal:
        """Free quote balance plus held base assets of ``symbols`` valued at last price."""
        balances = self._fetch_balance()
        total = to_decimal((balances.get(self.quote_currency) or {}).get("total") or 0)

        for symbol in symbols:
            base, _, quote = symbol.partition("/")
            if quote != self.quote_currency:
                continue
            held = to_decimal((balances.get(base) or {}).get("total") or 0)
            if held <= 0:
                continue
            total += held * self.get_current_price(symbol)

        logger.debug(f"Total account value: {total} {self.quote_currency}")
        return total

    # ------------------------------------------------------------------
    # Orders (single attempt)
    # ------------------------------------------------------------------

    def create_market_buy_order(self, symbol: str, amount_in_quote: Decimal) -> OrderFill:
        amount = to_float(amount_in_quote)
        logger.info(f"Creating market buy order {symbol} for {amount_in_quote} {self.quote_currency}")
        try:
            order = self.client.create_market_buy_order(symbol, amount, {"quoteOrderQty": amount})
        except (ccxt.InsufficientFunds, ccxt.InvalidOrder) as e:
            logger.error(f"Buy order rejected for {symbol}: {e}")
            raise OrderExecutionError(symbol, "buy", e) from e
        except ccxt.BaseError as e:
            logger.error(f"Buy order failed for {symbol}: {e}")
            raise OrderExecutionError(symbol, "buy", e) from e

        fill = self._map_order(order, symbol, "buy")
        logger.info(f"Market buy executed {symbol}: id={fill.order_id} filled={fill.filled} price={fill.price} cost={fill.cost}")
        return fill

    def create_market_sell_order(self, symbol: str, quantity: Decimal) -> OrderFill:
        amount = to_float(quantity)
        logger.info(f"Creating market sell order {symbol} qty={quantity}")
        try:
            order = self.client.create_market_sell_order(symbol, amount)
        except (ccxt.InsufficientFunds, ccxt.InvalidOrder) as e:
            logger.error(f"Sell order rejected for {symbol}: {e}")
            raise OrderExecutionError(symbol, "sell", e) from e
        except ccxt.BaseError as e:
            logger.error(f"Sell order failed for {symbol}: {e}")
            raise OrderExecutionError(symbol, "sell", e) from e

        fill = self._map_order(order, symbol, "sell")
        logger.info(f"Market sell executed {symbol}: id={fill.order_id} filled={fill.filled} price={fill.price} cost={fill.cost}")
        return fill

    @staticmethod
    def _map_order(order: Dict, symbol: str, side: str) -> OrderFill:
        filled = to_decimal(order.get("filled") or 0)
        cost = to_decimal(order.get("cost") or 0)
        price = to_decimal(order.get("average") or order.get("price") or 0)
        if price <= 0 and filled > 0:
            price = cost / filled
        if filled <= 0:
            raise OrderExecutionError(symbol, side, ValueError(f"order {order.get('id')} reported no fill"))

        fee = order.get("fee") or {}
        timestamp = order.get("timestamp")
        return OrderFill(
            symbol=order.get("symbol") or symbol,
            side=side,
            price=price,
            filled=filled,
            cost=cost,
            order_id=str(order.get("id")),
            fee=to_decimal(fee.get("cost") or 0) if fee else ZERO,
            fee_currency=fee.get("currency") if fee else None,
            timestamp=(
                datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
                if timestamp else datetime.now(timezone.utc)
            ),
        )
