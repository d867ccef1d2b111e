"""Tests for the TaAPI bulk client (HTTP mocked)."""
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.exceptions import IndicatorSourceError
from core.taapi_client import IndicatorRequest, TaapiClient
from infra.rate_limiter import SlidingWindowRateLimiter


def _response(payload=None, status=200, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.json.return_value = payload
    if status >= 400:
        error = requests.exceptions.HTTPError(f"{status} error")
        error.response = response
        response.raise_for_status.side_effect = error
    else:
        response.raise_for_status.return_value = None
    return response


REQUESTS = [
    IndicatorRequest(id="ema_4h", indicator="ema", symbol="BTC/USDT", interval="4h", period=200),
    IndicatorRequest(id="rsi_15m", indicator="rsi", symbol="BTC/USDT", interval="15m", period=14),
]


@patch("core.taapi_client.requests.post")
def test_bulk_request_shape_and_parsing(mock_post):
    mock_post.return_value = _response({
        "data": [
            {"id": "ema_4h", "result": {"value": 95000.5}, "errors": []},
            {"id": "rsi_15m", "result": {"value": 28.4}, "errors": []},
        ]
    })
    client = TaapiClient(secret="s3cret", exchange="binance")

    values = client.fetch_bulk(REQUESTS)

    assert values == {"ema_4h": 95000.5, "rsi_15m": 28.4}
    url = mock_post.call_args[0][0]
    body = mock_post.call_args[1]["json"]
    assert url == "https://api.taapi.io/bulk"
    assert body["secret"] == "s3cret"
    items = body["construct"]["indicators"]
    assert items[0] == {
        "id": "ema_4h", "indicator": "ema", "exchange": "binance",
        "symbol": "BTC/USDT", "interval": "4h", "period": 200,
    }
    assert items[1]["interval"] == "15m"


@patch("core.taapi_client.requests.post")
def test_items_without_value_are_omitted(mock_post):
    mock_post.return_value = _response({
        "data": [
            {"id": "ema_4h", "result": {}, "errors": ["not enough candles"]},
            {"id": "rsi_15m", "result": {"value": "31.0"}},
        ]
    })
    values = TaapiClient(secret="s").fetch_bulk(REQUESTS)
    assert values == {"rsi_15m": 31.0}


def test_empty_request_list_skips_http():
    with patch("core.taapi_client.requests.post") as mock_post:
        assert TaapiClient(secret="s").fetch_bulk([]) == {}
        mock_post.assert_not_called()


@patch("core.taapi_client.time.sleep")
@patch("core.taapi_client.requests.post")
def test_retries_on_rate_limit_then_succeeds(mock_post, mock_sleep):
    mock_post.side_effect = [
        _response(status=429),
        _response({"data": [{"id": "ema_4h", "result": {"value": 1.0}}]}),
    ]
    values = TaapiClient(secret="s", max_retries=3).fetch_bulk(REQUESTS)
    assert values == {"ema_4h": 1.0}
    assert mock_post.call_count == 2
    assert mock_sleep.call_count == 1


@patch("core.taapi_client.time.sleep")
@patch("core.taapi_client.requests.post")
def test_client_error_is_not_retried(mock_post, mock_sleep):
    mock_post.return_value = _response(status=401, text="bad secret")
    with pytest.raises(IndicatorSourceError) as exc:
        TaapiClient(secret="s", max_retries=3).fetch_bulk(REQUESTS)
    assert exc.value.status_code == 401
    assert mock_post.call_count == 1
    mock_sleep.assert_not_called()


@patch("core.taapi_client.time.sleep")
@patch("core.taapi_client.requests.post")
def test_network_errors_exhaust_retries(mock_post, mock_sleep):
    mock_post.side_effect = requests.exceptions.ConnectionError("down")
    with pytest.raises(IndicatorSourceError):
        TaapiClient(secret="s", max_retries=3).fetch_bulk(REQUESTS)
    assert mock_post.call_count == 3
    assert mock_sleep.call_count == 2


@patch("core.taapi_client.requests.post")
def test_unexpected_payload_raises(mock_post):
    mock_post.return_value = _response({"error": "nope"})
    with pytest.raises(IndicatorSourceError):
        TaapiClient(secret="s").fetch_bulk(REQUESTS)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


@patch("core.taapi_client.time.sleep")
@patch("core.taapi_client.requests.post")
def test_every_retry_takes_a_rate_limit_slot(mock_post, mock_sleep):
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=15, clock=clock, sleep=clock.sleep)
    mock_post.side_effect = [
        _response(status=429),
        _response(status=429),
        _response({"data": [{"id": "ema_4h", "result": {"value": 1.0}}]}),
    ]

    values = TaapiClient(secret="s", max_retries=3, rate_limiter=limiter).fetch_bulk(REQUESTS)

    assert values == {"ema_4h": 1.0}
    assert mock_post.call_count == limiter.get_stats()["total_requests"] == 3
    assert clock.now >= 30.0
