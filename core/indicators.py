"""
gridtrader Core: Indicator Service

Short-TTL cache in front of the indicator provider. A snapshot request
reads the cache first and sends at most one batched, rate-limited fetch for
whatever is missing. Provider failures degrade to None fields; they never
fail the tick.
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from core.exceptions import IndicatorSourceError
from core.models import IndicatorSnapshot
from core.numeric import to_decimal
from core.taapi_client import IndicatorRequest
from infra.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

# (indicator, interval, request id, period)
SNAPSHOT_INDICATORS: Tuple[Tuple[str, str, str, int], ...] = (
    ("ema", "4h", "ema_4h", 200),
    ("atr", "4h", "atr_4h", 14),
    ("rsi", "15m", "rsi_15m", 14),
    ("rsi", "1h", "rsi_1h", 14),
)

VOLUME_RATIO_KEY = "volratio:1h"


def cache_key(symbol: str, indicator: str, interval: str) -> str:
    return f"{symbol}:{indicator}:{interval}"


@dataclass
class EntryEvaluation:
    can_enter: bool
    reasons: List[str] = field(default_factory=list)
    indicators: Optional[IndicatorSnapshot] = None


class IndicatorService:
    """
    Indicator snapshot provider for the strategy.

    Args:
        source: object with ``fetch_bulk(List[IndicatorRequest]) -> Dict[str, float]``
        policy: policy.yaml dict (reads ``grid`` and ``entry``)
        rate_limiter: sliding window taken once per bulk fetch; leave None when
            ``source`` throttles its own HTTP attempts (TaapiClient)
        cache_ttl_seconds: lifetime of a cached value
        volume_source: optional ``(symbol, lookback) -> Optional[float]``
        clock: monotonic clock, injectable for tests
    """

    def __init__(
        self,
        source,
        policy: Dict,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        cache_ttl_seconds: float = 60.0,
        volume_source: Optional[Callable[[str, int], Optional[float]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.source = source
        self.rate_limiter = rate_limiter
        self.cache_ttl_seconds = float(cache_ttl_seconds)
        self.volume_source = volume_source
        self._clock = clock or time.monotonic
        self._cache: Dict[str, Tuple[float, float]] = {}
        self._lock = Lock()

        grid_cfg = policy.get("grid", {}) or {}
        entry_cfg = policy.get("entry", {}) or {}
        self.grid_percent = to_decimal(grid_cfg.get("drop_percent", "0.03"))
        self.grid_percent_high_vol = to_decimal(grid_cfg.get("drop_percent_high_vol", "0.04"))
        self.atr_high_vol_threshold = to_decimal(grid_cfg.get("atr_high_vol_threshold", "0.02"))
        self.rsi_threshold = float(entry_cfg.get("rsi_threshold", 40))
        self.volume_lookback = int(entry_cfg.get("volume_lookback", 20))

        logger.info(
            f"Initialized IndicatorService (ttl={self.cache_ttl_seconds:.0f}s, "
            f"rsi<{self.rsi_threshold:g}, volume_lookback={self.volume_lookback})"
        )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _get_cached(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            value, fetched_at = entry
            if self._clock() - fetched_at >= self.cache_ttl_seconds:
                del self._cache[key]
                return None
            return value

    def _set_cached(self, key: str, value: float) -> None:
        with self._lock:
            self._cache[key] = (value, self._clock())

    def invalidate(self, symbol: Optional[str] = None) -> None:
        with self._lock:
            if symbol is None:
                self._cache.clear()
                return
            prefix = f"{symbol}:"
            for key in [k for k in self._cache if k.startswith(prefix)]:
                del self._cache[key]

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def get_snapshot(self, symbol: str) -> IndicatorSnapshot:
        """Cached-or-fetched indicator values; missing data comes back as None."""
        missing = [
            IndicatorRequest(id=req_id, indicator=indicator, symbol=symbol, interval=interval, period=period)
            for indicator, interval, req_id, period in SNAPSHOT_INDICATORS
            if self._get_cached(cache_key(symbol, indicator, interval)) is None
        ]

        if missing:
            try:
                if self.rate_limiter is not None:
                    self.rate_limiter.acquire("taapi:bulk")
                results = self.source.fetch_bulk(missing)
                by_id = {req.id: req for req in missing}
                for req_id, value in results.items():
                    req = by_id.get(req_id)
                    if req is not None:
                        self._set_cached(cache_key(symbol, req.indicator, req.interval), value)
            except IndicatorSourceError as e:
                logger.error(f"{symbol}: indicator fetch failed: {e}")
            except Exception as e:
                logger.error(f"{symbol}: unexpected indicator fetch error: {e}", exc_info=True)

        self._refresh_volume_ratio(symbol)

        snapshot = IndicatorSnapshot(
            symbol=symbol,
            ema200_4h=self._get_cached(cache_key(symbol, "ema", "4h")),
            atr14_4h=self._get_cached(cache_key(symbol, "atr", "4h")),
            rsi_15m=self._get_cached(cache_key(symbol, "rsi", "15m")),
            rsi_1h=self._get_cached(cache_key(symbol, "rsi", "1h")),
            volume_ratio=self._get_cached(f"{symbol}:{VOLUME_RATIO_KEY}"),
        )
        logger.debug(f"{symbol}: indicator snapshot {snapshot}")
        return snapshot

    def _refresh_volume_ratio(self, symbol: str) -> None:
        if self.volume_lookback <= 0 or self.volume_source is None:
            return
        key = f"{symbol}:{VOLUME_RATIO_KEY}"
        if self._get_cached(key) is not None:
            return
        try:
            ratio = self.volume_source(symbol, self.volume_lookback)
        except Exception as e:
            logger.warning(f"{symbol}: volume ratio unavailable: {e}")
            return
        if ratio is not None:
            self._set_cached(key, float(ratio))

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate_entry(
        self,
        symbol: str,
        price: Decimal,
        snapshot: Optional[IndicatorSnapshot] = None,
    ) -> EntryEvaluation:
        """
        Entry gate: price above EMA200(4h) AND RSI(15m or 1h) oversold.

        Volume is reported in ``reasons`` but never blocks entry.
        """
        indicators = snapshot or self.get_snapshot(symbol)
        reasons: List[str] = []
        can_enter = True

        ema = indicators.ema200_4h
        if ema is None:
            can_enter = False
            reasons.append("EMA200 data unavailable")
        elif not self.is_above_ema200(price, ema):
            can_enter = False
            reasons.append(f"Price {price:.2f} below EMA200 {ema:.2f}")
        else:
            reasons.append(f"Price above EMA200 ({ema:.2f})")

        rsi_15m_ok = indicators.rsi_15m is not None and indicators.rsi_15m < self.rsi_threshold
        rsi_1h_ok = indicators.rsi_1h is not None and indicators.rsi_1h < self.rsi_threshold
        if not (rsi_15m_ok or rsi_1h_ok):
            can_enter = False
            reasons.append(
                f"RSI not oversold (15m: {_fmt(indicators.rsi_15m)}, 1h: {_fmt(indicators.rsi_1h)}, "
                f"threshold: {self.rsi_threshold:g})"
            )
        else:
            which = f"15m={indicators.rsi_15m:.1f}" if rsi_15m_ok else f"1h={indicators.rsi_1h:.1f}"
            reasons.append(f"RSI oversold ({which} < {self.rsi_threshold:g})")

        if self.volume_lookback > 0 and indicators.volume_ratio is not None:
            if indicators.volume_ratio <= 1.0:
                reasons.append(f"Volume below average (ratio: {indicators.volume_ratio:.2f})")
            else:
                reasons.append(f"Volume above average (ratio: {indicators.volume_ratio:.2f})")

        return EntryEvaluation(can_enter=can_enter, reasons=reasons, indicators=indicators)

    @staticmethod
    def is_above_ema200(price: Decimal, ema200: Optional[float]) -> bool:
        if ema200 is None:
            return False
        return price > to_decimal(ema200)

    def adapt_grid_percent(self, atr: Optional[float], price: Decimal) -> Decimal:
        """Wider grid when ATR/price signals high volatility."""
        if atr is None or price <= 0:
            return self.grid_percent
        atr_ratio = to_decimal(atr) / price
        if atr_ratio > self.atr_high_vol_threshold:
            logger.debug(f"High volatility (ATR ratio {atr_ratio:.4f}), using wider grid")
            return self.grid_percent_high_vol
        return self.grid_percent


def _fmt(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{value:.1f}"
