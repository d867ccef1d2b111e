"""Tests for Telegram notifications and the notification log."""
from decimal import Decimal
from unittest.mock import MagicMock, patch
import urllib.error

import pytest

from infra.alerting import NotificationConfig, NotificationService, NotificationType


def make_service(ledger=None, **overrides):
    config = NotificationConfig(
        enabled=True,
        bot_token="token",
        chat_id="42",
        dedupe_seconds=60.0,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return NotificationService(config, ledger=ledger)


def _ok_response():
    response = MagicMock()
    response.status = 200
    response.__enter__.return_value = response
    return response


@patch("infra.alerting.urllib.request.urlopen")
def test_message_is_posted_and_logged(mock_urlopen, ledger):
    mock_urlopen.return_value = _ok_response()
    service = make_service(ledger)

    assert service.notify_cycle_start("BTC/USDT", Decimal("97123.4"), 28.7)

    request = mock_urlopen.call_args[0][0]
    assert request.full_url == "https://api.telegram.org/bottoken/sendMessage"
    assert b'"chat_id": "42"' in request.data
    assert b"CYCLE START" in request.data

    records = ledger.get_notifications()
    assert len(records) == 1
    assert records[0].type == "CYCLE_START"
    assert records[0].symbol == "BTC/USDT"
    assert records[0].sent is True


@patch("infra.alerting.urllib.request.urlopen")
def test_identical_messages_are_deduplicated(mock_urlopen, ledger):
    mock_urlopen.return_value = _ok_response()
    service = make_service(ledger)

    service.notify_buy("BTC/USDT", Decimal("100"), Decimal("100"), 1)
    service.notify_buy("BTC/USDT", Decimal("100"), Decimal("100"), 1)
    service.notify_buy("BTC/USDT", Decimal("97"), Decimal("100"), 2)

    assert mock_urlopen.call_count == 2
    assert len(ledger.get_notifications()) == 2


@patch("infra.alerting.urllib.request.urlopen")
def test_delivery_failure_is_logged_not_raised(mock_urlopen, ledger):
    mock_urlopen.side_effect = urllib.error.URLError("unreachable")
    service = make_service(ledger)

    assert service.notify_bot_paused("PAUSED_DRAWDOWN", "GLOBAL") is False

    record = ledger.get_notifications()[0]
    assert record.type == NotificationType.BOT_PAUSED.value
    assert record.symbol is None
    assert record.sent is False


@patch("infra.alerting.urllib.request.urlopen")
def test_dry_run_never_sends(mock_urlopen, ledger, caplog):
    service = make_service(ledger, dry_run=True)
    with caplog.at_level("INFO", logger="infra.alerting"):
        service.notify_crash_detected("ETH/USDT", Decimal("0.0925"))
    mock_urlopen.assert_not_called()
    assert "CRASH DETECTED" in caplog.text
    assert ledger.get_notifications()[0].sent is False


@patch("infra.alerting.urllib.request.urlopen")
def test_missing_credentials_disable_delivery(mock_urlopen):
    service = NotificationService(
        NotificationConfig(enabled=True, bot_token=None, chat_id="42"),
    )
    assert not service.is_enabled()
    assert service.notify_drawdown_warning(Decimal("0.12")) is False
    mock_urlopen.assert_not_called()


def test_ledger_failure_does_not_propagate():
    ledger = MagicMock()
    ledger.log_notification.side_effect = RuntimeError("disk full")
    service = make_service(ledger, dry_run=True)
    assert service.notify_lateral_detected("BTC/USDT", 24) is False


def test_from_config_reads_env(monkeypatch):
    monkeypatch.setenv("MY_TOKEN", "abc")
    monkeypatch.setenv("MY_CHAT", "7")
    service = NotificationService.from_config(
        {"enabled": True, "bot_token_env": "MY_TOKEN", "chat_id_env": "MY_CHAT"},
        policy={"risk": {"max_drawdown": 0.2, "lateral_cycle_count": 5}},
    )
    assert service.is_enabled()
    assert service._config.max_drawdown == Decimal("0.2")
    assert service._config.lateral_cycle_count == 5


@pytest.mark.parametrize("method,args,text", [
    ("notify_cycle_end", ("BTC/USDT", Decimal("6"), Decimal("6")), "Profit: $6.00 (6.00%)"),
    ("notify_partial_sell", ("BTC/USDT", Decimal("104"), Decimal("0.5"), Decimal("0.5")), "PARTIAL SELL* (50%)"),
    ("notify_trailing_sell", ("BTC/USDT", Decimal("108"), Decimal("0.5")), "TRAILING STOP"),
    ("notify_bot_resumed", ("ETH/USDT",), "BOT RESUMED* (ETH/USDT)"),
    ("notify_order_failed", ("BTC/USDT", "DCA_BUY", RuntimeError("boom")), "Error: boom"),
])
def test_message_formats(ledger, method, args, text):
    service = make_service(ledger, dry_run=True)
    getattr(service, method)(*args)
    assert text in ledger.get_notifications()[0].message
