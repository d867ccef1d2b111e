"""Telegram notifications with a durable delivery log."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from core.models import NotificationRecord

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class NotificationType(str, Enum):
    CYCLE_START = "CYCLE_START"
    CYCLE_END = "CYCLE_END"
    BUY = "BUY"
    PARTIAL_SELL = "PARTIAL_SELL"
    TRAILING_TRIGGERED = "TRAILING_TRIGGERED"
    DRAWDOWN_WARNING = "DRAWDOWN_WARNING"
    BOT_PAUSED = "BOT_PAUSED"
    BOT_RESUMED = "BOT_RESUMED"
    CRASH_DETECTED = "CRASH_DETECTED"
    LATERAL_DETECTED = "LATERAL_DETECTED"
    ORDER_FAILED = "ORDER_FAILED"


@dataclass
class NotificationConfig:
    enabled: bool
    bot_token: Optional[str]
    chat_id: Optional[str]
    dry_run: bool = False
    timeout: float = 10.0
    dedupe_seconds: float = 60.0  # Identical messages within this window are sent once
    max_drawdown: Decimal = Decimal("0.15")
    crash_window_minutes: int = 240
    lateral_cycle_count: int = 3


class NotificationService:
    """
    Fire-and-forget notification sink.

    Every delivery attempt is written to the ledger's notification log with
    whether it was sent. Delivery and logging failures are logged and never
    raised to the caller.
    """

    def __init__(self, config: NotificationConfig, ledger=None) -> None:
        self._config = config
        self._ledger = ledger
        self._enabled = bool(config.enabled and config.bot_token and config.chat_id)
        if config.enabled and not self._enabled:
            logger.warning("Telegram enabled but token or chat id missing; delivery disabled")
        self._recent: Dict[str, float] = {}

    @classmethod
    def from_config(
        cls,
        raw_config: Optional[Dict[str, Any]],
        ledger=None,
        policy: Optional[Dict[str, Any]] = None,
    ) -> "NotificationService":
        raw_config = raw_config or {}
        risk_cfg = (policy or {}).get("risk", {}) or {}

        token_env = raw_config.get("bot_token_env", "TELEGRAM_BOT_TOKEN")
        chat_env = raw_config.get("chat_id_env", "TELEGRAM_CHAT_ID")

        config = NotificationConfig(
            enabled=bool(raw_config.get("enabled", False)),
            bot_token=os.getenv(token_env, "") or None,
            chat_id=os.getenv(chat_env, "") or None,
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 10.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
            max_drawdown=Decimal(str(risk_cfg.get("max_drawdown", "0.15"))),
            crash_window_minutes=int(risk_cfg.get("crash_time_window_minutes", 240)),
            lateral_cycle_count=int(risk_cfg.get("lateral_cycle_count", 3)),
        )
        return cls(config, ledger=ledger)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(self, type_: NotificationType, message: str, symbol: Optional[str] = None) -> bool:
        """
        Deliver a message and record the attempt.

        Returns:
            True if Telegram accepted the message
        """
        fingerprint = self._fingerprint(type_, symbol, message)
        if self._should_dedupe(fingerprint):
            logger.debug(f"Notification deduped: {type_.value} (fingerprint={fingerprint[:8]}...)")
            return False
        self._recent[fingerprint] = time.monotonic()

        sent = False
        if self._config.dry_run:
            logger.info("[NOTIFY:%s] %s", type_.value, message.replace("\n", " | "))
        elif self._enabled:
            sent = self._send_telegram(message)

        if self._ledger is not None:
            try:
                self._ledger.log_notification(
                    NotificationRecord(type=type_.value, symbol=symbol, message=message, sent=sent)
                )
            except Exception as exc:
                logger.error("Failed to record notification %s: %s", type_.value, exc)
        return sent

    def _fingerprint(self, type_: NotificationType, symbol: Optional[str], message: str) -> str:
        content = f"{type_.value}|{symbol or ''}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _should_dedupe(self, fingerprint: str) -> bool:
        now = time.monotonic()
        # Drop entries that left the window
        expired = [fp for fp, seen in self._recent.items() if now - seen > self._config.dedupe_seconds]
        for fp in expired:
            del self._recent[fp]
        return fingerprint in self._recent

    def _send_telegram(self, text: str) -> bool:
        url = f"{TELEGRAM_API}/bot{self._config.bot_token}/sendMessage"
        payload = {"chat_id": self._config.chat_id, "text": text, "parse_mode": "Markdown"}
        request = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    logger.error("Telegram API error %s: %s", response.status, body[:200])
                    return False
            return True
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to send Telegram message: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def notify_bot_started(self, symbols: List[str], mode: str) -> bool:
        return self.notify(
            NotificationType.BOT_RESUMED,
            f"*BOT STARTED*\nSymbols: {', '.join(symbols)}\nMode: {mode}",
        )

    def notify_cycle_start(self, symbol: str, price: Decimal, rsi: Optional[float]) -> bool:
        rsi_text = "N/A" if rsi is None else f"{rsi:.1f}"
        return self.notify(
            NotificationType.CYCLE_START,
            f"*CYCLE START* | {symbol}\nPrice: ${price:.2f}\nRSI: {rsi_text}",
            symbol,
        )

    def notify_cycle_end(self, symbol: str, profit: Decimal, profit_percent: Decimal) -> bool:
        marker = "🟢" if profit > 0 else "🔴"
        return self.notify(
            NotificationType.CYCLE_END,
            f"*CYCLE END* {marker} | {symbol}\nProfit: ${profit:.2f} ({profit_percent:.2f}%)",
            symbol,
        )

    def notify_buy(self, symbol: str, price: Decimal, amount: Decimal, buy_number: int) -> bool:
        label = "INITIAL BUY" if buy_number == 1 else f"DCA BUY #{buy_number}"
        return self.notify(
            NotificationType.BUY,
            f"*{label}* | {symbol}\nPrice: ${price:.2f}\nAmount: ${amount:.2f}",
            symbol,
        )

    def notify_partial_sell(self, symbol: str, price: Decimal, quantity: Decimal, percent: Decimal) -> bool:
        return self.notify(
            NotificationType.PARTIAL_SELL,
            f"*PARTIAL SELL* ({percent * 100:.0f}%) | {symbol}\nPrice: ${price:.2f}\nQty: {quantity:.8f}",
            symbol,
        )

    def notify_trailing_sell(self, symbol: str, price: Decimal, quantity: Decimal) -> bool:
        return self.notify(
            NotificationType.TRAILING_TRIGGERED,
            f"*TRAILING STOP* triggered | {symbol}\nPrice: ${price:.2f}\nQty: {quantity:.8f}",
            symbol,
        )

    def notify_drawdown_warning(self, drawdown: Decimal) -> bool:
        return self.notify(
            NotificationType.DRAWDOWN_WARNING,
            f"*DRAWDOWN WARNING*\nCurrent: {drawdown * 100:.2f}%\n"
            f"Max allowed: {self._config.max_drawdown * 100:.0f}%",
        )

    def notify_bot_paused(self, reason: str, scope: str) -> bool:
        return self.notify(
            NotificationType.BOT_PAUSED,
            f"*BOT PAUSED*\nReason: {reason} ({scope})\nManual intervention may be required.",
            None if scope == "GLOBAL" else scope,
        )

    def notify_bot_resumed(self, scope: str) -> bool:
        return self.notify(
            NotificationType.BOT_RESUMED,
            f"*BOT RESUMED* ({scope})\nTrading operations restored.",
            None if scope == "GLOBAL" else scope,
        )

    def notify_crash_detected(self, symbol: str, drop: Decimal) -> bool:
        hours = self._config.crash_window_minutes / 60
        return self.notify(
            NotificationType.CRASH_DETECTED,
            f"*CRASH DETECTED* | {symbol}\nDrop: {drop * 100:.2f}% in {hours:g}h\nNew buys suspended.",
            symbol,
        )

    def notify_lateral_detected(self, symbol: str, pause_hours: float) -> bool:
        return self.notify(
            NotificationType.LATERAL_DETECTED,
            f"*LATERAL MARKET* | {symbol}\n{self._config.lateral_cycle_count} consecutive low-profit cycles.\n"
            f"Paused for {pause_hours:g}h.",
            symbol,
        )

    def notify_order_failed(self, symbol: str, action: str, error: Exception) -> bool:
        return self.notify(
            NotificationType.ORDER_FAILED,
            f"*ORDER FAILED* | {symbol}\nAction: {action}\nError: {error}",
            symbol,
        )


__all__ = ["NotificationService", "NotificationType", "NotificationConfig"]
