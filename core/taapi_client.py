"""
TaAPI bulk client.

One POST to ``/bulk`` carries every indicator a tick needs; each request
item sets its own exchange/symbol/interval/period so EMA(4h), ATR(4h),
RSI(15m) and RSI(1h) travel together.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from core.exceptions import IndicatorSourceError

logger = logging.getLogger(__name__)

TAAPI_BASE = "https://api.taapi.io"


@dataclass(frozen=True)
class IndicatorRequest:
    """One indicator inside a bulk construct."""
    id: str
    indicator: str
    symbol: str
    interval: str
    period: Optional[int] = None

    def to_payload(self, exchange: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "indicator": self.indicator,
            "exchange": exchange,
            "symbol": self.symbol,
            "interval": self.interval,
        }
        if self.period:
            payload["period"] = self.period
        return payload


class TaapiClient:
    """
    Thin HTTP client for the TaAPI bulk endpoint.

    Retries on 429, 5xx and network errors with exponential backoff; other
    4xx responses are raised immediately. When a rate limiter is given, every
    attempt (retries included) takes a slot from it before the POST.
    """

    def __init__(
        self,
        secret: str,
        exchange: str = "binance",
        base_url: str = TAAPI_BASE,
        timeout: float = 30.0,
        max_retries: int = 3,
        rate_limiter=None,
    ):
        self.secret = secret
        self.exchange = exchange
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.rate_limiter = rate_limiter

    def fetch_bulk(self, indicators: List[IndicatorRequest]) -> Dict[str, float]:
        """
        Fetch several indicators in one call.

        Returns:
            Mapping of request id -> numeric value. Items the provider could
            not compute are omitted.

        Raises:
            IndicatorSourceError: request failed after retries or returned
                an unusable payload
        """
        if not indicators:
            return {}

        first = indicators[0]
        body = {
            "secret": self.secret,
            "construct": {
                "exchange": self.exchange,
                "symbol": first.symbol,
                "interval": first.interval,
                "indicators": [ind.to_payload(self.exchange) for ind in indicators],
            },
        }
        logger.debug(f"Sending TaAPI bulk request ids={[ind.id for ind in indicators]}")
        payload = self._post("/bulk", body)
        return self._parse_bulk(payload)

    @staticmethod
    def _parse_bulk(payload: Any) -> Dict[str, float]:
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise IndicatorSourceError(f"Unexpected TaAPI bulk payload: {str(payload)[:200]}")

        results: Dict[str, float] = {}
        for item in payload["data"]:
            if not isinstance(item, dict):
                continue
            key = item.get("id") or item.get("indicator")
            result = item.get("result")
            if isinstance(result, list):
                result = result[0] if result else None
            value = result.get("value") if isinstance(result, dict) else None
            if key and value is not None:
                try:
                    results[key] = float(value)
                except (TypeError, ValueError):
                    logger.warning(f"TaAPI returned non-numeric value for {key}: {value!r}")
        return results

    def _post(self, endpoint: str, body: Dict[str, Any]) -> Any:
        url = self.base_url + endpoint
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            if self.rate_limiter is not None:
                self.rate_limiter.acquire(f"taapi:{endpoint.strip('/')}")
            try:
                response = requests.post(url, json=body, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None

                if status_code is not None and 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"TaAPI client error: {status_code} - {e.response.text[:200]}")
                    raise IndicatorSourceError(f"TaAPI rejected request ({status_code})", status_code) from e

                logger.warning(f"TaAPI error ({status_code}) on {endpoint}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on TaAPI {endpoint}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except ValueError as e:
                raise IndicatorSourceError(f"TaAPI returned invalid JSON: {e}") from e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying TaAPI in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for TaAPI {endpoint}")
        raise IndicatorSourceError(f"TaAPI request failed: {last_exception}")
