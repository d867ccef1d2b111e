"""Prometheus-backed metrics hooks for the trading loop and order flow."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose bot stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors. When
    disabled every record_* call still updates the in-process snapshot used
    by ``--status`` but nothing is registered.
    """
    _instance: Optional["MetricsRecorder"] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9090):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9090) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._collectors: List = []
        self._last_actions: Dict[str, str] = {}
        self._last_balance: Optional[float] = None
        self._last_drawdown: Optional[float] = None

        if not self._enabled:
            self._tick_counter = None
            self._tick_summary = None
            self._order_failures = None
            self._balance_gauge = None
            self._drawdown_gauge = None
            self._bot_state_gauge = None
            self._cycles_counter = None
            self._profit_counter = None
            self._open_cycles_gauge = None
            return

        self._tick_counter = self._register(Counter(
            "gridtrader_ticks_total",
            "Strategy ticks by resulting action",
            labelnames=("symbol", "action"),
        ))
        self._tick_summary = self._register(Summary(
            "gridtrader_tick_duration_seconds",
            "Duration of one strategy tick",
            labelnames=("symbol",),
        ))
        self._order_failures = self._register(Counter(
            "gridtrader_order_failures_total",
            "Orders or executions that failed",
            labelnames=("symbol", "action"),
        ))
        self._balance_gauge = self._register(Gauge(
            "gridtrader_account_balance",
            "Total account value in quote currency",
        ))
        self._drawdown_gauge = self._register(Gauge(
            "gridtrader_drawdown_ratio",
            "Current drawdown from peak (0-1)",
        ))
        self._bot_state_gauge = self._register(Gauge(
            "gridtrader_bot_running",
            "1 if the scope is RUNNING, 0 if paused",
            labelnames=("scope", "state"),
        ))
        self._cycles_counter = self._register(Counter(
            "gridtrader_cycles_completed_total",
            "Completed cycles by outcome",
            labelnames=("symbol", "outcome"),
        ))
        self._profit_counter = self._register(Gauge(
            "gridtrader_realized_profit",
            "Cumulative realized profit in quote currency",
            labelnames=("symbol",),
        ))
        self._open_cycles_gauge = self._register(Gauge(
            "gridtrader_open_cycles",
            "Number of open cycles",
        ))

    def _register(self, collector):
        self._collectors.append(collector)
        return collector

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in getattr(cls._instance, "_collectors", []):
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
        logger.error("Failed to start Prometheus exporter on ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_tick(self, symbol: str, action: str, duration: float) -> None:
        self._last_actions[symbol] = action
        if self._tick_counter is None:
            return
        self._tick_counter.labels(symbol=symbol, action=action).inc()
        self._tick_summary.labels(symbol=symbol).observe(max(0.0, duration))

    def record_order_failure(self, symbol: str, action: str) -> None:
        if self._order_failures is None:
            return
        self._order_failures.labels(symbol=symbol, action=action).inc()

    def record_balance(self, balance: Decimal, drawdown: Decimal) -> None:
        self._last_balance = float(balance)
        self._last_drawdown = float(drawdown)
        if self._balance_gauge is None:
            return
        self._balance_gauge.set(self._last_balance)
        self._drawdown_gauge.set(self._last_drawdown)

    def record_bot_state(self, scope: str, state: str) -> None:
        if self._bot_state_gauge is None:
            return
        self._bot_state_gauge.labels(scope=scope, state=state).set(1 if state == "RUNNING" else 0)

    def record_cycle_completed(self, symbol: str, profit: Decimal) -> None:
        if self._cycles_counter is None:
            return
        outcome = "win" if profit > 0 else "loss"
        self._cycles_counter.labels(symbol=symbol, outcome=outcome).inc()
        self._profit_counter.labels(symbol=symbol).inc(float(profit))

    def record_open_cycles(self, count: int) -> None:
        if self._open_cycles_gauge is None:
            return
        self._open_cycles_gauge.set(count)

    def last_actions(self) -> Dict[str, str]:
        return dict(self._last_actions)

    def last_balance(self) -> Optional[float]:
        return self._last_balance

    def last_drawdown(self) -> Optional[float]:
        return self._last_drawdown


__all__ = ["MetricsRecorder"]
